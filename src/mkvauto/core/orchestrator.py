"""Main workflow orchestration for mkvauto."""

import logging
import signal
import threading
from pathlib import Path
from queue import Empty, Full, Queue

from mkvauto.config import MkvautoConfig
from mkvauto.core.events import (
    CancelRip,
    ClearCompleted,
    Command,
    DeleteEncoding,
    DiscInserted,
    EncodeComplete,
    ErrorOccurred,
    Event,
    EventBus,
    LogLine,
    PauseEncoding,
    Quit,
    ResumeEncoding,
    RetryFailed,
    RipComplete,
    RipProgress,
    RipStatus,
    ScanComplete,
    ScanForMissing,
    ScanStatus,
    SelectTitles,
    StopEncoding,
    Subscription,
    TitleSelectionRequired,
)
from mkvauto.disc.media import (
    DetectedDisc,
    MediaKind,
    kind_from_path,
    sanitize_filename,
)
from mkvauto.disc.monitor import DiscMonitor, eject_disc
from mkvauto.disc.parser import ScanResult, Title
from mkvauto.disc.ripper import MakeMKVRipper, find_newest_mkv
from mkvauto.disc.title_selector import select_by_ids, select_titles
from mkvauto.encode.handbrake import HandBrakeEncoder
from mkvauto.encode.worker import EncodeWorker, WorkerCommand
from mkvauto.error_handling import (
    ErrorCategory,
    HardwareError,
    LockError,
    MkvautoError,
    OperationCancelledError,
    PersistenceError,
    RipError,
    ScanError,
)
from mkvauto.notify.discord import DiscordNotifier
from mkvauto.process_lock import ProcessLock
from mkvauto.queue.manager import QueueItem, QueueManager
from mkvauto.ui.console import ConsoleUI

logger = logging.getLogger(__name__)
session_logger = logging.getLogger("mkvauto.session")

_POLL_TIMEOUT = 0.5


class MkvautoApp:
    """Owns every collaborator and wires the rip and encode pipelines together.

    Background threads: disc monitor, disc dispatcher, encode worker, session
    log writer and notifier. The console UI runs on the calling thread.
    Collaborators can be passed in for testing.
    """

    def __init__(
        self,
        config: MkvautoConfig,
        *,
        queue: QueueManager | None = None,
        ripper: MakeMKVRipper | None = None,
        encoder: HandBrakeEncoder | None = None,
        monitor: DiscMonitor | None = None,
        notifier: DiscordNotifier | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.queue = queue or QueueManager(config.queue_file)
        self.ripper = ripper or MakeMKVRipper(config)
        self.encoder = encoder or HandBrakeEncoder(config)
        self.monitor = monitor or DiscMonitor(
            device=config.drive.path,
            poll_interval=config.drive.poll_interval,
            settle_delay=config.drive.settle_delay,
        )
        self.notifier = notifier or DiscordNotifier(config)
        self.worker = EncodeWorker(
            self.queue,
            self.encoder,
            self.bus,
            tick_interval=config.worker.tick_interval,
        )
        self.lock = ProcessLock(config.lock_file)

        self.stop_event = threading.Event()
        self.title_selections: Queue[tuple[int, ...]] = Queue(maxsize=1)
        self.awaiting_selection = threading.Event()
        self._rip_cancel: threading.Event | None = None
        self._rip_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._listeners: list[threading.Thread] = []
        self._subscriptions: list[Subscription] = []

    # Lifecycle

    def run(self, ui=None) -> None:
        """Run the interactive pipeline until the operator quits.

        Raises:
            LockError: Another instance is already running.
            PersistenceError: The queue state file cannot be read.
        """
        self.lock.acquire()
        try:
            self.config.ensure_directories()
            self.queue.load_state()

            if ui is None:
                ui = ConsoleUI(self.bus, self.queue, self.handle_command)

            self._install_signal_handlers()
            self.start_background()
            logger.info("mkvauto started - ready for discs")
            ui.run(self.stop_event)
        finally:
            self.shutdown()
            self.lock.release()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def request_stop(signum: int, _frame: object) -> None:
            logger.info(f"Received signal {signum}, shutting down")
            self.stop_event.set()

        signal.signal(signal.SIGTERM, request_stop)

    def _spawn(self, name: str, target, *args, listener: bool = False) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        (self._listeners if listener else self._threads).append(thread)
        return thread

    def start_background(self) -> None:
        """Start every background thread."""
        self.stop_event.clear()

        session_log = self.bus.subscribe("session-log")
        notifications = self.bus.subscribe("notifier")
        self._subscriptions.extend([session_log, notifications])

        self._spawn("session-log", self._write_session_log, session_log, listener=True)
        self._spawn("notifier", self._send_notifications, notifications, listener=True)

        discs = self.monitor.start(self.stop_event)
        self._spawn("disc-dispatcher", self._dispatch_discs, discs)
        self._spawn("encode-worker", self.worker.run, self.stop_event)

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop background threads and cancel any running rip."""
        logger.info("Stopping mkvauto")
        self.stop_event.set()
        self.cancel_rip()

        # Producers first, so listeners see every event before they stop
        producers = list(self._threads)
        if self.monitor.thread is not None:
            producers.append(self.monitor.thread)
        self._join(producers, timeout)
        self._threads.clear()

        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        self._join(self._listeners, timeout)
        self._listeners.clear()

        self.notifier.close()

    def _join(self, threads: list[threading.Thread], timeout: float) -> None:
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop in time")

    # Background loops

    def _dispatch_discs(self, discs: "Queue[DetectedDisc]") -> None:
        while not self.stop_event.is_set():
            try:
                disc = discs.get(timeout=_POLL_TIMEOUT)
            except Empty:
                continue
            try:
                self.process_disc(disc)
            except Exception:
                logger.exception(f"Unexpected error while processing {disc}")

    def _listen(self, subscription: Subscription):
        """Yield events until the subscription is closed and drained."""
        while True:
            event = subscription.get(timeout=_POLL_TIMEOUT)
            if event is not None:
                yield event
            elif subscription.closed.is_set():
                return

    def _write_session_log(self, subscription: Subscription) -> None:
        for event in self._listen(subscription):
            if isinstance(event, LogLine):
                session_logger.info(event.message)
            elif isinstance(event, ErrorOccurred):
                session_logger.error(f"{event.operation} failed: {event.message}")

    def _send_notifications(self, subscription: Subscription) -> None:
        for event in self._listen(subscription):
            self.notify(event)

    def notify(self, event: Event) -> None:
        """Send the notification matching a pipeline event, if any."""
        if isinstance(event, RipComplete):
            self.notifier.send_rip_complete(
                event.disc_name,
                event.titles_ripped,
                event.media_kind.label,
            )
        elif isinstance(event, EncodeComplete):
            self.notifier.send_encode_complete(event.title_name, event.media_kind.label)
        elif isinstance(event, ErrorOccurred) and event.notify:
            self.notifier.send_error(event.operation, event.message)

    # Disc pipeline

    def process_disc(self, disc: DetectedDisc) -> int:
        """Scan, select, rip and queue one disc, then eject it.

        Returns the number of titles added to the encode queue.
        """
        cancel_event = threading.Event()
        with self._rip_lock:
            self._rip_cancel = cancel_event

        self.bus.publish(DiscInserted(disc.device))
        self.bus.log(f"Disc inserted in {disc.device}")

        try:
            return self._rip_disc(disc, cancel_event)
        except OperationCancelledError as e:
            logger.info(f"Disc processing cancelled: {e}")
            self.bus.log("Disc processing cancelled")
            return 0
        finally:
            with self._rip_lock:
                self._rip_cancel = None
            self._eject(disc.device)

    def _eject(self, device: str) -> None:
        if eject_disc(device):
            return
        error = HardwareError(
            f"Could not eject disc from {device}",
            solution="Remove the disc by hand before inserting the next one",
        )
        self._report_error("Eject", error)

    def _rip_disc(self, disc: DetectedDisc, cancel_event: threading.Event) -> int:
        try:
            scan = self.ripper.scan_disc(
                disc.device,
                cancel_event=cancel_event,
                status_callback=lambda status: self.bus.publish(
                    ScanStatus(f"Scan: {status}"),
                ),
            )
        except ScanError as e:
            self._report_error("Disc Scan", e)
            return 0

        disc.name = sanitize_filename(scan.disc_name)
        disc.media_kind = scan.media_kind
        logger.info(f"Scanned {disc}: {len(scan.titles)} titles")
        self.bus.publish(
            ScanComplete(scan.disc_name, scan.media_kind, tuple(scan.titles)),
        )

        selected = select_titles(
            scan.titles,
            movie_threshold=self.config.thresholds.movie_min_minutes * 60,
            episode_threshold=self.config.thresholds.episode_min_minutes * 60,
        )
        if not selected:
            selected = self._ask_for_titles(scan, cancel_event)
            if not selected:
                self.bus.publish(
                    ErrorOccurred("Title Selection", "no titles selected", notify=False),
                )
                return 0

        disc_folder = self.config.output_dir / disc.name
        raw_folder = disc_folder / "raw"
        encoded_folder = disc_folder / "encoded"
        try:
            raw_folder.mkdir(parents=True, exist_ok=True)
            encoded_folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._report_error("Disc Rip", f"failed to create output directory: {e}")
            return 0

        queued = 0
        for index, title in enumerate(selected, start=1):
            if self._rip_and_queue(
                scan,
                disc,
                title,
                (index, len(selected)),
                raw_folder,
                encoded_folder,
                cancel_event,
            ):
                queued += 1

        if cancel_event.is_set():
            raise OperationCancelledError("Disc processing cancelled")

        self.bus.publish(RipComplete(scan.disc_name, queued, scan.media_kind))
        self.bus.log(f"Rip complete: {scan.disc_name} ({queued} title(s) queued)")
        return queued

    def _rip_and_queue(
        self,
        scan: ScanResult,
        disc: DetectedDisc,
        title: Title,
        position: tuple[int, int],
        raw_folder: Path,
        encoded_folder: Path,
        cancel_event: threading.Event,
    ) -> bool:
        index, count = position
        name = title.name or f"Title {title.title_id}"
        self.bus.publish(RipStatus(f"Preparing to rip title {index} of {count}..."))
        self.bus.publish(RipProgress(index, count, name, 0.0))

        try:
            for update in self.ripper.rip_title(
                title.title_id,
                raw_folder,
                device=disc.device,
                cancel_event=cancel_event,
            ):
                if update.progress is not None:
                    self.bus.publish(RipProgress(index, count, name, update.progress))
                elif update.status:
                    self.bus.publish(RipStatus(f"Rip: {update.status}"))
                elif update.log:
                    self.bus.log(update.log)
            raw_file = find_newest_mkv(raw_folder)
        except RipError as e:
            self._report_error("Disc Rip", e)
            return False

        item = QueueItem(
            source_path=raw_file,
            dest_path=encoded_folder / raw_file.name,
            media_kind=disc.media_kind or scan.media_kind,
            disc_name=scan.disc_name,
            title_name=title.name,
        )
        try:
            self.queue.add(item)
        except PersistenceError as e:
            # Still queued in memory; only the state file is behind
            self._report_error("Queue", e, notify=False)
        return True

    def _ask_for_titles(
        self,
        scan: ScanResult,
        cancel_event: threading.Event,
    ) -> list[Title]:
        """Block until the operator picks titles from the scan."""
        while True:
            try:
                self.title_selections.get_nowait()
            except Empty:
                break

        self.awaiting_selection.set()
        self.bus.publish(TitleSelectionRequired(scan.disc_name, tuple(scan.titles)))
        self.bus.log("No titles matched the duration thresholds, waiting for selection")
        try:
            while True:
                if cancel_event.is_set() or self.stop_event.is_set():
                    raise OperationCancelledError("Title selection cancelled")
                try:
                    title_ids = self.title_selections.get(timeout=_POLL_TIMEOUT)
                except Empty:
                    continue
                return select_by_ids(scan.titles, list(title_ids))
        finally:
            self.awaiting_selection.clear()

    def _report_error(
        self,
        operation: str,
        error: Exception | str,
        *,
        notify: bool = True,
    ) -> None:
        logger.error(f"{operation} failed: {error}")
        self.bus.publish(ErrorOccurred(operation, str(error), notify=notify))

    def cancel_rip(self) -> bool:
        """Abort the current scan or rip; the disc is ejected when it unwinds."""
        with self._rip_lock:
            if self._rip_cancel is None:
                return False
            self._rip_cancel.set()
        self.bus.log("Cancelling rip and ejecting disc")
        return True

    # Commands

    def handle_command(self, command: Command) -> None:
        """Act on one operator command."""
        if isinstance(command, SelectTitles):
            self._answer_selection(command.title_ids)
        elif isinstance(command, PauseEncoding):
            self.worker.send(WorkerCommand.PAUSE)
        elif isinstance(command, ResumeEncoding):
            self.worker.send(WorkerCommand.RESUME)
        elif isinstance(command, StopEncoding):
            self.worker.send(WorkerCommand.STOP)
        elif isinstance(command, DeleteEncoding):
            self.worker.send(WorkerCommand.DELETE)
        elif isinstance(command, ClearCompleted):
            self._run_queue_maintenance("Cleared", self.queue.clear_completed)
        elif isinstance(command, RetryFailed):
            self._run_queue_maintenance("Retrying", self.queue.retry_failed)
        elif isinstance(command, ScanForMissing):
            threading.Thread(
                target=self.scan_for_missing,
                name="scan-for-missing",
                daemon=True,
            ).start()
        elif isinstance(command, CancelRip):
            if not self.cancel_rip():
                self.bus.log("No rip in progress")
        elif isinstance(command, Quit):
            self.stop_event.set()
        else:
            msg = f"Unknown command: {command!r}"
            raise TypeError(msg)

    def _answer_selection(self, title_ids: tuple[int, ...]) -> None:
        if not self.awaiting_selection.is_set():
            logger.warning("Ignoring title selection, none was requested")
            return
        try:
            self.title_selections.put_nowait(tuple(title_ids))
        except Full:
            logger.warning("Title selection already answered")

    def _run_queue_maintenance(self, verb: str, operation) -> None:
        try:
            count = operation()
        except PersistenceError as e:
            self._report_error("Queue", e, notify=False)
            return
        self.bus.log(f"{verb} {count} item(s)")

    def scan_for_missing(self) -> int:
        """Queue every raw rip under the output directory that has no encode.

        Returns the number of items added.
        """
        self.bus.log("Scanning for raw files missing encoded versions...")
        output_dir = self.config.output_dir
        if not output_dir.is_dir():
            self.bus.log(f"Output directory {output_dir} does not exist")
            return 0

        added = 0
        for disc_folder in sorted(p for p in output_dir.iterdir() if p.is_dir()):
            raw_folder = disc_folder / "raw"
            if not raw_folder.is_dir():
                continue
            encoded_folder = disc_folder / "encoded"

            for raw_file in sorted(raw_folder.iterdir()):
                if not raw_file.is_file() or raw_file.suffix.lower() != ".mkv":
                    continue

                dest_path = encoded_folder / raw_file.name
                if dest_path.exists() or self.queue.has_source_path(raw_file):
                    continue

                item = QueueItem(
                    source_path=raw_file,
                    dest_path=dest_path,
                    media_kind=kind_from_path(raw_file),
                    disc_name=disc_folder.name,
                    title_name=raw_file.name,
                )
                try:
                    self.queue.add(item)
                except PersistenceError as e:
                    self.bus.log(f"Failed to add {raw_file.name} to queue: {e}")
                    continue

                self.bus.log(f"Added to queue: {raw_file.name}")
                added += 1

        if added == 0:
            self.bus.log("No missing encodes found")
        else:
            self.bus.log(f"Added {added} item(s) to encoding queue")
        return added


def add_file_to_queue(
    config: MkvautoConfig,
    source: Path,
    kind: str = "auto",
    output: Path | None = None,
) -> QueueItem:
    """Add an existing file to the persisted queue without starting the pipeline.

    Raises:
        MkvautoError: The source file does not exist.
        ValueError: kind is not auto, bluray or dvd.
        LockError: mkvauto is running and owns the queue.
    """
    source_path = Path(source).expanduser().resolve()
    if not source_path.is_file():
        msg = f"Source file does not exist: {source_path}"
        raise MkvautoError(msg, ErrorCategory.FILESYSTEM)

    if kind.strip().lower() == "auto":
        media_kind = kind_from_path(source_path)
    else:
        media_kind = MediaKind.from_name(kind)

    if output is not None:
        dest_path = Path(output).expanduser().resolve()
    else:
        dest_path = source_path.with_name(
            f"{source_path.stem}_encoded{source_path.suffix}",
        )

    pid = ProcessLock(config.lock_file).holder()
    if pid is not None:
        msg = f"mkvauto is running (PID {pid}) and owns the encode queue"
        raise LockError(
            msg,
            solution=(
                "Quit mkvauto first, or place the file under "
                f"{config.output_dir}/<disc>/raw and press 'm' to scan for missing encodes"
            ),
        )

    queue = QueueManager(config.queue_file)
    queue.load_state()
    item = QueueItem(
        source_path=source_path,
        dest_path=dest_path,
        media_kind=media_kind,
        disc_name="Manual",
        title_name=source_path.name,
    )
    queue.add(item)
    return item
