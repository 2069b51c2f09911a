"""Durable encode queue backed by a JSON state file."""

import copy
import json
import logging
import os
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from mkvauto.disc.media import MediaKind
from mkvauto.error_handling import PersistenceError

logger = logging.getLogger(__name__)


class QueueItemStatus(Enum):
    """Status of items in the encode queue."""

    QUEUED = "queued"
    ENCODING = "encoding"
    PAUSED = "paused"  # Display state layered on ENCODING
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.title()


ACTIVE_STATUSES = (QueueItemStatus.ENCODING, QueueItemStatus.PAUSED)
FINISHED_STATUSES = (QueueItemStatus.COMPLETE, QueueItemStatus.FAILED)


def _datetime_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class QueueItem:
    """One file waiting for, undergoing, or finished with encoding."""

    def __init__(
        self,
        source_path: Path,
        dest_path: Path,
        media_kind: MediaKind = MediaKind.DVD,
        disc_name: str = "",
        title_name: str = "",
        status: QueueItemStatus = QueueItemStatus.QUEUED,
        progress: float = 0.0,
        item_id: str | None = None,
        created_at: datetime | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        error: str | None = None,
    ):
        self.item_id = item_id or uuid.uuid4().hex
        self.source_path = Path(source_path)
        self.dest_path = Path(dest_path)
        self.media_kind = media_kind
        self.disc_name = disc_name
        self.title_name = title_name
        self.status = status
        self.progress = progress
        self.created_at = created_at or datetime.now(UTC)
        self.started_at = started_at
        self.completed_at = completed_at
        self.error = error

    def __str__(self) -> str:
        name = self.title_name or self.source_path.name
        return f"{name} ({self.status.value})"

    def __repr__(self) -> str:
        return f"QueueItem(item_id={self.item_id!r}, status={self.status.value!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueueItem):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item_id,
            "source_path": str(self.source_path),
            "dest_path": str(self.dest_path),
            "media_kind": self.media_kind.value,
            "disc_name": self.disc_name,
            "title_name": self.title_name,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": _datetime_to_str(self.created_at),
            "started_at": _datetime_to_str(self.started_at),
            "completed_at": _datetime_to_str(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueItem":
        return cls(
            item_id=data["id"],
            source_path=Path(data["source_path"]),
            dest_path=Path(data["dest_path"]),
            media_kind=MediaKind(data.get("media_kind", MediaKind.DVD.value)),
            disc_name=data.get("disc_name", ""),
            title_name=data.get("title_name", ""),
            status=QueueItemStatus(data["status"]),
            progress=float(data.get("progress", 0.0)),
            created_at=_str_to_datetime(data.get("created_at")),
            started_at=_str_to_datetime(data.get("started_at")),
            completed_at=_str_to_datetime(data.get("completed_at")),
            error=data.get("error"),
        )


class QueueStatePersistence:
    """Reads and atomically rewrites the queue state file."""

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)

    def save(self, items: list[QueueItem]) -> None:
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_name(self.state_path.name + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump([item.to_dict() for item in items], f, indent=2)
            os.replace(tmp_path, self.state_path)
        except OSError as e:
            msg = f"Failed to write queue state to {self.state_path}: {e}"
            raise PersistenceError(msg, original_error=e)

    def load(self) -> list[QueueItem]:
        """Return the persisted items; a missing file is an empty queue."""
        try:
            with open(self.state_path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as e:
            msg = f"Failed to read queue state from {self.state_path}: {e}"
            raise PersistenceError(msg, original_error=e)

        try:
            return [QueueItem.from_dict(entry) for entry in data]
        except (TypeError, KeyError, ValueError) as e:
            msg = f"Queue state file {self.state_path} is malformed: {e}"
            raise PersistenceError(msg, original_error=e)

    def delete(self) -> None:
        self.state_path.unlink(missing_ok=True)


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class QueueManager:
    """Ordered, persistent list of encode jobs.

    Every mutation rewrites the whole state file. If that write fails the
    in-memory change is kept and PersistenceError is raised to the caller.
    Callers only ever receive copies of items and change them through ids.
    """

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)
        self.persistence = QueueStatePersistence(self.state_path)
        self._items: list[QueueItem] = []
        self._lock = _ReadWriteLock()

    def _save(self) -> None:
        self.persistence.save(self._items)

    def _find(self, item_id: str) -> QueueItem | None:
        for item in self._items:
            if item.item_id == item_id:
                return item
        return None

    def _active(self) -> QueueItem | None:
        for item in self._items:
            if item.status in ACTIVE_STATUSES:
                return item
        return None

    def load_state(self) -> None:
        """Load persisted items, returning interrupted encodes to the queue."""
        with self._lock.write():
            self._items = self.persistence.load()

            recovered = 0
            for item in self._items:
                if item.status in ACTIVE_STATUSES:
                    item.status = QueueItemStatus.QUEUED
                    item.progress = 0.0
                    item.started_at = None
                    recovered += 1

            if recovered:
                logger.info("Reset %s interrupted encodes to queued", recovered)
            logger.info("Loaded %s queue items from %s", len(self._items), self.state_path)
            self._save()

    def save_state(self) -> None:
        with self._lock.read():
            self._save()

    def add(self, item: QueueItem) -> QueueItem:
        with self._lock.write():
            self._items.append(copy.copy(item))
            logger.info("Added to encode queue: %s", item)
            self._save()
        return item

    def has_source_path(self, source_path: Path) -> bool:
        """Check whether any item already encodes source_path."""
        source = Path(source_path)
        with self._lock.read():
            return any(item.source_path == source for item in self._items)

    def get_next(self) -> QueueItem | None:
        """Return a copy of the first queued item."""
        with self._lock.read():
            for item in self._items:
                if item.status == QueueItemStatus.QUEUED:
                    return copy.copy(item)
        return None

    def claim_next(self) -> QueueItem | None:
        """Atomically mark the first queued item as encoding and return a copy.

        Returns None when nothing is queued or another item is already
        encoding.
        """
        with self._lock.write():
            if self._active() is not None:
                return None
            for item in self._items:
                if item.status == QueueItemStatus.QUEUED:
                    item.status = QueueItemStatus.ENCODING
                    item.started_at = datetime.now(UTC)
                    item.progress = 0.0
                    claimed = copy.copy(item)
                    self._save()
                    return claimed
        return None

    def update_progress(self, item_id: str, progress: float) -> bool:
        with self._lock.write():
            item = self._find(item_id)
            if item is None:
                return False
            item.progress = max(0.0, min(100.0, progress))
            self._save()
            return True

    def set_status(self, item_id: str, status: QueueItemStatus) -> bool:
        """Change an item's status, stamping start and completion times.

        Returns False for unknown ids, and when moving an item to ENCODING
        while a different item is already active.
        """
        with self._lock.write():
            item = self._find(item_id)
            if item is None:
                return False

            if status == QueueItemStatus.ENCODING:
                active = self._active()
                if active is not None and active is not item:
                    logger.warning(
                        "Refusing to start %s while %s is encoding", item, active
                    )
                    return False
                if item.status != QueueItemStatus.PAUSED:
                    item.started_at = datetime.now(UTC)
            elif status in FINISHED_STATUSES:
                item.completed_at = datetime.now(UTC)

            item.status = status
            self._save()
            return True

    def complete(self, item_id: str) -> bool:
        with self._lock.write():
            item = self._find(item_id)
            if item is None:
                return False
            item.status = QueueItemStatus.COMPLETE
            item.progress = 100.0
            item.completed_at = datetime.now(UTC)
            logger.info("Encode complete: %s", item)
            self._save()
            return True

    def fail(self, item_id: str, error: str) -> bool:
        with self._lock.write():
            item = self._find(item_id)
            if item is None:
                return False
            item.status = QueueItemStatus.FAILED
            item.error = error
            item.completed_at = datetime.now(UTC)
            logger.warning("Encode failed: %s: %s", item, error)
            self._save()
            return True

    def pause(self, item_id: str) -> bool:
        return self.set_status(item_id, QueueItemStatus.PAUSED)

    def resume(self, item_id: str) -> bool:
        return self.set_status(item_id, QueueItemStatus.ENCODING)

    def get_all(self) -> list[QueueItem]:
        with self._lock.read():
            return [copy.copy(item) for item in self._items]

    def get_item(self, item_id: str) -> QueueItem | None:
        with self._lock.read():
            item = self._find(item_id)
            return copy.copy(item) if item else None

    def get_current(self) -> QueueItem | None:
        """Return a copy of the encoding (or paused) item, if any."""
        with self._lock.read():
            item = self._active()
            return copy.copy(item) if item else None

    def clear_completed(self) -> int:
        """Remove complete and failed items, keeping the order of the rest."""
        with self._lock.write():
            before = len(self._items)
            self._items = [
                item for item in self._items if item.status not in FINISHED_STATUSES
            ]
            count = before - len(self._items)
            logger.info("Cleared %s finished items from queue", count)
            self._save()
            return count

    def retry_failed(self) -> int:
        """Return failed and stuck encoding items to the queue."""
        with self._lock.write():
            count = 0
            for item in self._items:
                if item.status in (QueueItemStatus.FAILED, QueueItemStatus.ENCODING):
                    item.status = QueueItemStatus.QUEUED
                    item.progress = 0.0
                    item.error = None
                    item.started_at = None
                    item.completed_at = None
                    count += 1
            logger.info("Reset %s items for retry", count)
            self._save()
            return count

    def remove(self, item_id: str, *, force: bool = False) -> bool:
        """Remove an item from the queue.

        Args:
            force: Also remove an item that is encoding or paused. Only the
                worker that owns the encode should pass this.
        """
        with self._lock.write():
            item = self._find(item_id)
            if item is None:
                return False
            if item.status in ACTIVE_STATUSES and not force:
                logger.warning("Cannot remove %s while it is encoding", item)
                return False
            self._items.remove(item)
            logger.info("Removed %s from queue", item)
            self._save()
            return True

    def get_queue_stats(self) -> dict[str, int]:
        """Count items per status value."""
        with self._lock.read():
            stats: dict[str, int] = {}
            for item in self._items:
                stats[item.status.value] = stats.get(item.status.value, 0) + 1
            return stats
