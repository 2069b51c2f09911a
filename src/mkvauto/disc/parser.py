"""Parser for makemkvcon robot-mode (-r) output.

Relevant record types::

    CINFO:id,code,"value"                disc attribute (id 2 is the disc name)
    TINFO:title,attr,code,"value"        title attribute
    PRGC:code,id,"name"                  current operation
    PRGT:code,id,"name"                  total operation
    PRGV:current,total,max               progress counters
    MSG:code,flags,count,"text",...      free-text message

Lines that do not match are ignored.
"""

import logging
import re
from dataclasses import dataclass, field

from mkvauto.disc.media import MediaKind

logger = logging.getLogger(__name__)

# TINFO attribute ids
ATTR_NAME = 2
ATTR_CHAPTERS = 8
ATTR_DURATION = 9
ATTR_SIZE = 10  # may be human readable ("23.9 GB")
ATTR_SIZE_BYTES = 11

_MSG_TEXT = re.compile(r'^MSG:\d+,\d+,\d+,"((?:[^"\\]|\\.)*)"')


@dataclass
class Title:
    """One extractable title found by a disc scan."""

    title_id: int
    name: str = ""
    duration: int = 0  # seconds
    size: int = 0  # bytes
    chapters: int = 0

    @property
    def duration_str(self) -> str:
        return format_duration(self.duration)

    def __str__(self) -> str:
        return f"{self.name or f'Title {self.title_id}'}: {self.duration_str}"


@dataclass
class ScanResult:
    """Disc-level result of an info scan."""

    titles: list[Title] = field(default_factory=list)
    disc_name: str = ""
    media_kind: MediaKind = MediaKind.DVD


def extract_quoted_value(text: str) -> str:
    """Return the text between the first and last double quote."""
    start = text.find('"')
    end = text.rfind('"')
    if start != -1 and end != -1 and start < end:
        return text[start + 1 : end]
    return ""


def parse_duration(duration_str: str) -> int:
    """Parse an H:MM:SS duration to seconds; anything else is 0."""
    parts = duration_str.strip().strip('"').split(":")
    if len(parts) != 3:
        return 0
    try:
        hours, minutes, seconds = (int(p) for p in parts)
    except ValueError:
        logger.debug(f"Invalid duration '{duration_str}'")
        return 0
    return hours * 3600 + minutes * 60 + seconds


def format_duration(seconds: int) -> str:
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours}:{minutes:02d}:{secs:02d}"


def format_size(size_bytes: int) -> str:
    """Format a byte count in binary units."""
    unit = 1024
    if size_bytes < unit:
        return f"{size_bytes} B"
    div, exp = unit, 0
    n = size_bytes // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size_bytes / div:.1f} {'KMGTPE'[exp]}B"


def parse_title_info(line: str, titles: dict[int, Title]) -> None:
    """Fold one TINFO line into the per-title map."""
    parts = line[len("TINFO:") :].split(",", 3)
    if len(parts) < 4:
        return

    try:
        title_id = int(parts[0])
        attr_id = int(parts[1])
    except ValueError:
        return

    value = extract_quoted_value(parts[3])
    title = titles.setdefault(title_id, Title(title_id=title_id))

    if attr_id == ATTR_NAME:
        title.name = value
    elif attr_id == ATTR_DURATION:
        title.duration = parse_duration(value)
    elif attr_id in (ATTR_SIZE, ATTR_SIZE_BYTES):
        if value.isdigit():
            title.size = int(value)
    elif attr_id == ATTR_CHAPTERS:
        title.chapters = int(value) if value.isdigit() else 0


def detect_media_kind(line: str, current: MediaKind | None) -> MediaKind | None:
    """Update the media kind guess from one output line."""
    lowered = line.lower()
    if "blu-ray" in lowered or "bd-rom" in lowered:
        return MediaKind.BLURAY
    if "dvd" in lowered and current is None:
        return MediaKind.DVD
    return current


def parse_info(output: str) -> ScanResult:
    """Parse the complete output of ``makemkvcon -r info``."""
    result = ScanResult()
    titles: dict[int, Title] = {}
    media_kind: MediaKind | None = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith('CINFO:2,0,"'):
            result.disc_name = extract_quoted_value(line)

        media_kind = detect_media_kind(line, media_kind)

        if line.startswith("TINFO:"):
            parse_title_info(line, titles)

    result.media_kind = media_kind or MediaKind.DVD
    # Zero-length titles are scan artifacts
    result.titles = [titles[tid] for tid in sorted(titles) if titles[tid].duration > 0]

    logger.debug(
        f"Parsed disc '{result.disc_name}' ({result.media_kind}): "
        f"{len(result.titles)} titles",
    )
    return result


def parse_progress(line: str) -> tuple[int, int, int] | None:
    """Parse ``PRGV:current,total,max``."""
    if not line.startswith("PRGV:"):
        return None

    parts = line[len("PRGV:") :].split(",")
    if len(parts) < 3:
        return None

    try:
        current, total, maximum = (int(p) for p in parts[:3])
    except ValueError:
        return None
    return current, total, maximum


def calculate_percentage(current: int, total: int, maximum: int) -> float:
    """Percentage of the current operation.

    ``total`` tracks the whole job and is deliberately not used.
    """
    if maximum == 0:
        return 0.0
    return current / maximum * 100.0


def parse_status_message(line: str) -> str | None:
    """Extract the operation name from PRGC/PRGT lines."""
    if not (line.startswith("PRGC:") or line.startswith("PRGT:")):
        return None
    return extract_quoted_value(line) or None


def parse_message(line: str) -> str | None:
    """Extract the text of a MSG line."""
    match = _MSG_TEXT.match(line)
    if not match:
        return None
    return match.group(1) or None


def extract_error_message(output: str) -> str:
    """Pick the most useful error text out of makemkvcon output."""
    for line in output.splitlines():
        text = parse_message(line.strip())
        if not text:
            continue
        lowered = text.lower()
        if (
            "too old" in lowered
            or "registration key" in lowered
            or "failed" in lowered
            or "error" in lowered
        ):
            return text

    lines = [line for line in output.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "no output"
