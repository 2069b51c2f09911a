"""Single-consumer loop that feeds the encode queue to HandBrake."""

import logging
import threading
from enum import Enum
from queue import Empty, Queue

from mkvauto.core.events import (
    EncodeComplete,
    EncodeProgress,
    ErrorOccurred,
    EventBus,
)
from mkvauto.encode.handbrake import HandBrakeEncoder
from mkvauto.error_handling import EncodeCancelledError, PersistenceError
from mkvauto.queue.manager import QueueItem, QueueManager

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "cancelled by user"


class WorkerCommand(Enum):
    """Operator control of the encode worker."""

    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"  # Cancel the current encode, keep it as failed
    DELETE = "delete"  # Cancel the current encode and drop it from the queue


class EncodeWorker:
    """Encodes queued items one at a time.

    Commands are accepted at any moment, including while an encode runs:
    the encoder output is consumed on a reader thread so the worker thread
    stays free to act on pause, resume, stop and delete.
    """

    def __init__(
        self,
        queue: QueueManager,
        encoder: HandBrakeEncoder,
        events: EventBus,
        tick_interval: float = 1.0,
    ):
        self.queue = queue
        self.encoder = encoder
        self.events = events
        self.tick_interval = tick_interval
        self.commands: Queue[WorkerCommand] = Queue(maxsize=16)
        self.paused = False
        self.current: QueueItem | None = None
        self._delete_current = False

    def send(self, command: WorkerCommand) -> None:
        """Submit a command; blocks briefly if the inbox is full."""
        self.commands.put(command)

    def run(self, stop_event: threading.Event) -> None:
        """Process the queue until stop_event is set."""
        logger.info("Encode worker started")
        while not stop_event.is_set():
            self._wait_for_tick()
            if stop_event.is_set():
                break
            if self.paused:
                continue

            try:
                item = self.queue.claim_next()
            except PersistenceError as e:
                logger.error(f"Could not claim next queue item: {e}")
                continue

            if item is not None:
                self.encode_item(item, stop_event)
        logger.info("Encode worker stopped")

    def _wait_for_tick(self) -> None:
        """Sleep one tick, handling any commands that arrive meanwhile."""
        try:
            command = self.commands.get(timeout=self.tick_interval)
        except Empty:
            return
        self.handle_command(command)
        self._drain_commands()

    def _drain_commands(self) -> None:
        while True:
            try:
                command = self.commands.get_nowait()
            except Empty:
                return
            self.handle_command(command)

    def handle_command(self, command: WorkerCommand) -> None:
        current = self.current

        if command is WorkerCommand.PAUSE:
            self.paused = True
            self.encoder.pause()
            if current:
                self._record(self.queue.pause, current.item_id)
            logger.info("Encoding paused")
        elif command is WorkerCommand.RESUME:
            self.paused = False
            self.encoder.resume()
            if current:
                self._record(self.queue.resume, current.item_id)
            logger.info("Encoding resumed")
        elif command is WorkerCommand.STOP:
            self._delete_current = False
            self.encoder.cancel()
        elif command is WorkerCommand.DELETE:
            self._delete_current = True
            self.encoder.cancel()

    def _record(self, operation, *args, **kwargs) -> None:
        """Apply a queue update; a failed state write must not stop the worker."""
        try:
            operation(*args, **kwargs)
        except PersistenceError as e:
            logger.error(f"Failed to persist queue state: {e}")

    def encode_item(self, item: QueueItem, stop_event: threading.Event) -> None:
        """Encode one claimed item and record how it ended."""
        self.current = item
        self._delete_current = False
        self.events.publish(EncodeProgress(item.item_id, item.title_name, 0.0))
        self.events.log(f"Encoding started: {item.title_name}")

        outcome: dict[str, Exception | None] = {"error": None}

        def consume() -> None:
            try:
                for percent in self.encoder.encode(item, log_callback=self.events.log):
                    self._record(self.queue.update_progress, item.item_id, percent)
                    self.events.publish(
                        EncodeProgress(item.item_id, item.title_name, percent),
                    )
            except Exception as e:
                outcome["error"] = e

        # Commands handled before HandBrakeCLI launches are held by the encoder
        self.encoder.prepare()
        reader = threading.Thread(target=consume, name="encode-reader", daemon=True)
        reader.start()

        shutting_down = False
        while reader.is_alive():
            try:
                command = self.commands.get(timeout=0.2)
            except Empty:
                command = None
            if command is not None:
                self.handle_command(command)
            if stop_event.is_set() and not shutting_down:
                shutting_down = True
                self.encoder.cancel()
        reader.join()

        try:
            self._finish(item, outcome["error"], shutting_down)
        finally:
            self.current = None
            self._delete_current = False

    def _finish(
        self,
        item: QueueItem,
        error: Exception | None,
        shutting_down: bool,
    ) -> None:
        name = item.title_name or item.source_path.name

        if error is None:
            self._record(self.queue.complete, item.item_id)
            self.events.log(f"Encoding complete: {name}")
            self.events.publish(
                EncodeComplete(item.item_id, item.title_name, item.media_kind),
            )
            return

        if shutting_down:
            # Left as encoding; the next startup returns it to the queue
            logger.info(f"Encode of {name} interrupted by shutdown")
            return

        if isinstance(error, EncodeCancelledError):
            if self._delete_current:
                self._record(self.queue.remove, item.item_id, force=True)
                self.events.log(f"Encoding cancelled and removed: {name}")
            else:
                self._record(self.queue.fail, item.item_id, CANCELLED_BY_USER)
                self.events.log(f"Encoding cancelled: {name}")
            return

        logger.error(f"Encoding failed for {name}: {error}")
        self._record(self.queue.fail, item.item_id, str(error))
        self.events.log(f"Encoding failed: {name}: {error}")
        self.events.publish(ErrorOccurred("Encode", f"{name}: {error}"))
