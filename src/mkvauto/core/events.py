"""Pipeline events, operator commands, and the bus that fans events out."""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime

from mkvauto.disc.media import MediaKind
from mkvauto.disc.parser import Title

logger = logging.getLogger(__name__)


# Events published by the pipeline


@dataclass(frozen=True)
class DiscInserted:
    device: str


@dataclass(frozen=True)
class ScanStatus:
    message: str


@dataclass(frozen=True)
class ScanComplete:
    disc_name: str
    media_kind: MediaKind
    titles: tuple[Title, ...]


@dataclass(frozen=True)
class TitleSelectionRequired:
    """No title passed the duration thresholds; the operator must choose."""

    disc_name: str
    titles: tuple[Title, ...]


@dataclass(frozen=True)
class RipProgress:
    title_index: int  # 1-based position in the rip list
    title_count: int
    title_name: str
    percent: float


@dataclass(frozen=True)
class RipStatus:
    message: str


@dataclass(frozen=True)
class RipComplete:
    disc_name: str
    titles_ripped: int
    media_kind: MediaKind


@dataclass(frozen=True)
class EncodeProgress:
    item_id: str
    title_name: str
    percent: float


@dataclass(frozen=True)
class EncodeComplete:
    item_id: str
    title_name: str
    media_kind: MediaKind


@dataclass(frozen=True)
class ErrorOccurred:
    operation: str
    message: str
    notify: bool = True  # Also send a failure notification


@dataclass(frozen=True)
class LogLine:
    message: str
    timestamp: datetime = field(default_factory=datetime.now)


Event = (
    DiscInserted
    | ScanStatus
    | ScanComplete
    | TitleSelectionRequired
    | RipProgress
    | RipStatus
    | RipComplete
    | EncodeProgress
    | EncodeComplete
    | ErrorOccurred
    | LogLine
)


# Commands issued by the operator


@dataclass(frozen=True)
class SelectTitles:
    """Answer to TitleSelectionRequired; empty means rip nothing."""

    title_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class PauseEncoding:
    pass


@dataclass(frozen=True)
class ResumeEncoding:
    pass


@dataclass(frozen=True)
class StopEncoding:
    pass


@dataclass(frozen=True)
class DeleteEncoding:
    pass


@dataclass(frozen=True)
class ClearCompleted:
    pass


@dataclass(frozen=True)
class RetryFailed:
    pass


@dataclass(frozen=True)
class ScanForMissing:
    pass


@dataclass(frozen=True)
class CancelRip:
    """Abort the current scan or rip and eject the disc."""


@dataclass(frozen=True)
class Quit:
    pass


Command = (
    SelectTitles
    | PauseEncoding
    | ResumeEncoding
    | StopEncoding
    | DeleteEncoding
    | ClearCompleted
    | RetryFailed
    | ScanForMissing
    | CancelRip
    | Quit
)


class Subscription:
    """One listener's bounded inbox on the bus."""

    def __init__(self, name: str, maxsize: int):
        self.name = name
        self.queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self.closed = threading.Event()

    def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None if none arrived within timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed.set()


class EventBus:
    """Deliver every published event to every subscriber.

    Publishing blocks while a subscriber's inbox is full, so a slow
    listener slows the publisher down instead of losing events. Closed
    subscriptions are skipped.
    """

    def __init__(self, maxsize: int = 256, put_timeout: float = 0.5):
        self.maxsize = maxsize
        self.put_timeout = put_timeout
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, name: str) -> Subscription:
        subscription = Subscription(name, self.maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscribed %s to event bus", name)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)

        for subscription in subscriptions:
            while not subscription.closed.is_set():
                try:
                    subscription.queue.put(event, timeout=self.put_timeout)
                    break
                except queue.Full:
                    continue

    def log(self, message: str) -> None:
        """Publish a LogLine."""
        self.publish(LogLine(message))
