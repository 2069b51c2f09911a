"""Shared test configuration and fixtures."""

import logging
import tempfile
from pathlib import Path

import pytest

from mkvauto.cli import cleanup_logging
from mkvauto.config import MkvautoConfig
from mkvauto.disc.media import MediaKind
from mkvauto.disc.parser import Title
from mkvauto.queue.manager import QueueItem


@pytest.fixture(scope="function", autouse=True)
def cleanup_logging_handlers():
    """Automatically cleanup logging handlers after each test to prevent ResourceWarnings."""
    yield
    cleanup_logging()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir):
    """Configuration rooted in a temporary directory."""
    return MkvautoConfig(
        output_dir=temp_dir / "output",
        state_dir=temp_dir / "state",
    )


@pytest.fixture
def make_item(temp_dir):
    """Factory for queue items with paths under the temp directory."""

    def _make_item(name: str = "title_t00.mkv", **kwargs) -> QueueItem:
        kwargs.setdefault("media_kind", MediaKind.DVD)
        kwargs.setdefault("disc_name", "TEST_DISC")
        kwargs.setdefault("title_name", name)
        return QueueItem(
            source_path=temp_dir / "raw" / name,
            dest_path=temp_dir / "encoded" / name,
            **kwargs,
        )

    return _make_item


@pytest.fixture
def sample_titles():
    """Titles as a typical TV disc scan reports them."""
    return [
        Title(title_id=0, name="Episode 1", duration=1800, size=1_200_000_000, chapters=5),
        Title(title_id=1, name="Episode 2", duration=1500, size=1_100_000_000, chapters=5),
        Title(title_id=2, name="Extras", duration=600, size=300_000_000, chapters=2),
    ]


@pytest.fixture
def source_item(make_item):
    """Queue item whose source file exists."""
    item = make_item("movie.mkv")
    item.source_path.parent.mkdir(parents=True, exist_ok=True)
    item.source_path.write_bytes(b"fake video")
    return item


@pytest.fixture
def script_config(temp_dir):
    """Factory for configs whose HandBrakeCLI is a shell script."""

    def _script_config(body: str) -> MkvautoConfig:
        script = temp_dir / "HandBrakeCLI"
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(0o755)
        return MkvautoConfig(
            output_dir=temp_dir / "output",
            state_dir=temp_dir / "state",
            handbrake={"binary_path": str(script)},
        )

    return _script_config
