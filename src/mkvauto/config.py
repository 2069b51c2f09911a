"""Configuration management for mkvauto."""

import os
import shutil
from pathlib import Path

import tomli
from pydantic import BaseModel, Field, ValidationError, field_validator

from mkvauto.error_handling import ConfigurationError


class DriveConfig(BaseModel):
    """Optical drive settings."""

    path: str = Field(default="/dev/sr0")
    poll_interval: float = Field(default=2.0, gt=0)  # seconds
    settle_delay: float = Field(default=2.0, ge=0)  # seconds


class Thresholds(BaseModel):
    """Title selection thresholds in minutes."""

    movie_min_minutes: int = Field(default=60, gt=0)
    episode_min_minutes: int = Field(default=18, ge=0)


class MakeMKVConfig(BaseModel):
    """MakeMKV command-line settings."""

    binary_path: str = Field(default="makemkvcon")


class HandBrakeProfile(BaseModel):
    """Encoder profile applied to one kind of source media."""

    preset_file: str | None = None  # Filename inside presets_dir
    preset_name: str | None = None  # Preset within the file
    audio_languages: list[str] = Field(default_factory=list)
    subtitle_languages: list[str] = Field(default_factory=list)


class HandBrakeConfig(BaseModel):
    """HandBrakeCLI settings."""

    binary_path: str = Field(default="HandBrakeCLI")
    presets_dir: Path | None = None
    threads: int = Field(default=0, ge=0)  # 0 = encoder decides
    bluray: HandBrakeProfile = Field(default_factory=HandBrakeProfile)
    dvd: HandBrakeProfile = Field(default_factory=HandBrakeProfile)

    @field_validator("presets_dir", mode="before")
    @classmethod
    def expand_presets_dir(cls, v: Path | str | None) -> Path | None:
        """Expand user home directory in the presets path."""
        if v is None or v == "":
            return None
        return Path(v).expanduser()


class WorkerConfig(BaseModel):
    """Encode worker scheduling."""

    tick_interval: float = Field(default=1.0, gt=0)  # seconds


class MkvautoConfig(BaseModel):
    """Main configuration for mkvauto."""

    # Paths
    output_dir: Path = Field(default=Path("~/mkvauto"))
    state_dir: Path = Field(default=Path("~/.mkvauto"))

    # Notifications
    discord_webhook: str | None = None
    notification_timeout: int = Field(default=10)  # seconds

    drive: DriveConfig = Field(default_factory=DriveConfig)
    thresholds: Thresholds = Field(default_factory=Thresholds)
    makemkv: MakeMKVConfig = Field(default_factory=MakeMKVConfig)
    handbrake: HandBrakeConfig = Field(default_factory=HandBrakeConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    @field_validator("output_dir", "state_dir", mode="before")
    @classmethod
    def expand_paths(cls, v: Path | str) -> Path:
        """Expand user home directory in paths."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @property
    def queue_file(self) -> Path:
        """Persisted encode queue."""
        return self.state_dir / "queue.json"

    @property
    def lock_file(self) -> Path:
        """Single-instance lock file."""
        return self.state_dir / "mkvauto.lock"

    @property
    def log_file(self) -> Path:
        """Session log file."""
        return self.state_dir / "mkvauto.log"

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.output_dir, self.state_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def validate_tools(self) -> list[str]:
        """Return the configured external tools that cannot be found on PATH."""
        missing = []
        for binary in [self.makemkv.binary_path, self.handbrake.binary_path]:
            if not shutil.which(binary):
                missing.append(binary)
        return missing


def default_config_paths() -> list[Path]:
    """Locations searched for a config file when none is given."""
    return [
        Path.home() / ".config" / "mkvauto" / "config.toml",  # User config
        Path.cwd() / "mkvauto.toml",  # Current directory
    ]


def load_config(config_path: Path | None = None) -> MkvautoConfig:
    """Load configuration from file or defaults."""
    if config_path is None:
        env_path = os.getenv("MKVAUTO_CONFIG")
        if env_path:
            config_path = Path(env_path)
        else:
            for path in default_config_paths():
                if path.exists():
                    config_path = path
                    break

    if config_path is None:
        return MkvautoConfig()

    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise ConfigurationError(msg, config_path=config_path)

    try:
        with open(config_path, "rb") as f:
            config_data = tomli.load(f)
        return MkvautoConfig(**config_data)
    except tomli.TOMLDecodeError as e:
        msg = f"Configuration file is not valid TOML: {e}"
        raise ConfigurationError(msg, config_path=config_path, original_error=e)
    except ValidationError as e:
        msg = "Configuration values are invalid"
        raise ConfigurationError(
            msg,
            config_path=config_path,
            details=str(e),
            original_error=e,
        )


def create_sample_config(path: Path) -> None:
    """Create a sample configuration file."""
    sample_config = """# mkvauto Configuration
# =====================

# Where ripped (raw/) and encoded (encoded/) files are written, one folder per disc
output_dir = "~/mkvauto"

# Queue state, lock file and session log
state_dir = "~/.mkvauto"

# Discord webhook for rip/encode/error notifications (optional)
# discord_webhook = "https://discord.com/api/webhooks/..."

[drive]
path = "/dev/sr0"                 # Optical drive device
poll_interval = 2                 # Seconds between drive status checks
settle_delay = 2                  # Seconds to wait before trusting an insertion

[thresholds]
movie_min_minutes = 60            # Any title this long: rip only the longest title
episode_min_minutes = 18          # Otherwise rip every title at least this long

[makemkv]
binary_path = "makemkvcon"

[handbrake]
binary_path = "HandBrakeCLI"
# presets_dir = "~/.config/mkvauto/presets"
threads = 0                       # 0 = let the encoder decide

[handbrake.bluray]
# preset_file = "bluray.json"
# preset_name = "Blu-ray AV1"
audio_languages = ["eng"]
subtitle_languages = ["eng"]

[handbrake.dvd]
# preset_file = "dvd.json"
# preset_name = "DVD AV1"
audio_languages = ["eng"]
subtitle_languages = ["eng"]

[worker]
tick_interval = 1                 # Seconds between queue checks
"""

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(sample_config)
