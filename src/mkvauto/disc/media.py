"""Media kinds and disc identity helpers."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Raw rips larger than this are assumed to come from a Blu-ray
BLURAY_SIZE_THRESHOLD = 8 * 1024 * 1024 * 1024


class MediaKind(Enum):
    """Kind of optical media a title came from; selects the encoder profile."""

    BLURAY = "bluray"
    DVD = "dvd"

    @property
    def label(self) -> str:
        return "Blu-ray" if self is MediaKind.BLURAY else "DVD"

    @classmethod
    def from_name(cls, name: str) -> "MediaKind":
        """Parse user input such as 'bluray', 'blu-ray', 'br' or 'dvd'."""
        normalized = name.strip().lower()
        if normalized in ("bluray", "blu-ray", "br", "bd"):
            return cls.BLURAY
        if normalized == "dvd":
            return cls.DVD
        msg = f"Invalid media kind: {name} (use bluray or dvd)"
        raise ValueError(msg)

    def __str__(self) -> str:
        return self.label


def kind_from_file_size(size: int) -> MediaKind:
    """Guess the media kind of a raw rip from its size."""
    if size > BLURAY_SIZE_THRESHOLD:
        return MediaKind.BLURAY
    return MediaKind.DVD


def kind_from_path(path: Path) -> MediaKind:
    return kind_from_file_size(path.stat().st_size)


@dataclass
class DetectedDisc:
    """A disc insertion; name and kind are filled in after the scan."""

    device: str
    name: str | None = None
    media_kind: MediaKind | None = None
    detected_at: float = field(default_factory=time.time)

    def __str__(self) -> str:
        kind = self.media_kind.label if self.media_kind else "Unknown"
        return f"{kind} disc '{self.name or 'Unknown'}' on {self.device}"


_FILENAME_REPLACEMENTS = str.maketrans(
    {c: "_" for c in '/\\:*?"<>| '},
)


def sanitize_filename(name: str) -> str:
    """Make a disc name safe to use as a directory name."""
    sanitized = name.translate(_FILENAME_REPLACEMENTS).strip("_.")
    return sanitized or "Unnamed_Disc"
