"""HandBrakeCLI process supervision."""

import logging
import os
import pty
import re
import signal
import subprocess
import threading
from collections.abc import Callable, Iterator

from mkvauto.config import HandBrakeProfile, MkvautoConfig
from mkvauto.disc.media import MediaKind
from mkvauto.error_handling import EncodeCancelledError, EncodeError
from mkvauto.queue.manager import QueueItem

logger = logging.getLogger(__name__)

PROGRESS_PATTERN = re.compile(r"(?:Encoding:|Progress:).*?(\d+\.\d+)\s*%")

_TAIL_LINES = 20


def parse_encode_progress(line: str) -> float | None:
    """Extract the percentage from a HandBrake status line."""
    match = PROGRESS_PATTERN.search(line)
    if not match:
        return None
    return float(match.group(1))


def read_pty_lines(fd: int) -> Iterator[str]:
    """Read a pseudo-terminal one byte at a time, splitting on CR and LF.

    HandBrake redraws its status line with carriage returns, so both count
    as line ends. Empty lines are dropped. Reading stops when the other
    side of the terminal is closed.
    """
    buffer = bytearray()
    while True:
        try:
            byte = os.read(fd, 1)
        except OSError:
            # EIO once every writer has exited
            break
        if not byte:
            break
        if byte in (b"\n", b"\r"):
            if buffer:
                yield buffer.decode("utf-8", errors="replace")
                buffer.clear()
        else:
            buffer += byte

    if buffer:
        yield buffer.decode("utf-8", errors="replace")


class HandBrakeEncoder:
    """Runs one HandBrakeCLI encode at a time and controls it with signals."""

    def __init__(self, config: MkvautoConfig):
        self.config = config
        self.handbrake_binary = config.handbrake.binary_path
        self._lock = threading.Lock()
        self._process: subprocess.Popen | None = None
        self._paused = False
        self._starting = False
        self._cancel_pending = False
        self._pause_pending = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def profile_for(self, media_kind: MediaKind) -> HandBrakeProfile:
        if media_kind is MediaKind.BLURAY:
            return self.config.handbrake.bluray
        return self.config.handbrake.dvd

    def build_command(self, item: QueueItem) -> list[str]:
        """Build the HandBrakeCLI command line for a queue item."""
        profile = self.profile_for(item.media_kind)

        cmd = [
            self.handbrake_binary,
            "-i",
            str(item.source_path),
            "-o",
            str(item.dest_path),
        ]

        if profile.preset_file:
            preset_path = profile.preset_file
            if self.config.handbrake.presets_dir:
                preset_path = str(self.config.handbrake.presets_dir / profile.preset_file)
            cmd.extend(["--preset-import-file", preset_path])

            # Without a name HandBrake uses the first preset in the file
            if profile.preset_name:
                cmd.extend(["--preset", profile.preset_name])

        if profile.audio_languages:
            cmd.extend(["--audio-lang-list", ",".join(profile.audio_languages)])
            cmd.append("--first-audio")

        if profile.subtitle_languages:
            cmd.extend(
                ["--subtitle-lang-list", ",".join(profile.subtitle_languages)],
            )

        if self.config.handbrake.threads > 0:
            cmd.extend(["--encopts", f"threads={self.config.handbrake.threads}"])

        return cmd

    def prepare(self) -> None:
        """Accept control requests for an encode that is about to start.

        Pause and cancel requests made before HandBrakeCLI is running are
        held and applied as soon as it launches. An idle encoder that was
        not prepared ignores them.
        """
        with self._lock:
            self._starting = True
            self._cancel_pending = False
            self._pause_pending = False

    def _clear_pending(self) -> None:
        self._starting = False
        self._cancel_pending = False
        self._pause_pending = False

    def _launch(self, item: QueueItem) -> tuple[subprocess.Popen, int]:
        if not item.source_path.exists():
            msg = f"Source file not found: {item.source_path}"
            raise EncodeError(msg)

        item.dest_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(item)
        logger.info(f"Encoding {item.source_path.name} -> {item.dest_path}")
        logger.debug("Running: %s", " ".join(cmd))

        master_fd, slave_fd = pty.openpty()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master_fd)
            os.close(slave_fd)
            msg = f"Failed to start HandBrakeCLI: {e}"
            raise EncodeError(msg, original_error=e)
        os.close(slave_fd)
        return process, master_fd

    def encode(
        self,
        item: QueueItem,
        log_callback: Callable[[str], None] | None = None,
    ) -> Iterator[float]:
        """Encode one item, yielding progress percentages.

        Non-progress output lines go to log_callback. After a clean exit a
        final 100.0 is yielded.

        Raises:
            EncodeError: HandBrakeCLI could not start or exited non-zero.
            EncodeCancelledError: HandBrakeCLI was killed by a signal, or the
                encode was cancelled before it launched.
        """
        with self._lock:
            if self._cancel_pending:
                self._clear_pending()
                raise EncodeCancelledError(signal.SIGKILL)

        try:
            process, master_fd = self._launch(item)
        except Exception:
            with self._lock:
                self._clear_pending()
            raise

        with self._lock:
            self._process = process
            self._paused = False
            cancel, pause = self._cancel_pending, self._pause_pending
            self._clear_pending()
            if cancel:
                logger.info("Cancelling HandBrakeCLI (PID %s) on launch", process.pid)
                self._signal_group(process, signal.SIGKILL)
            elif pause and self._signal_group(process, signal.SIGSTOP):
                self._paused = True
                logger.info("Paused HandBrakeCLI (PID %s) on launch", process.pid)

        tail: list[str] = []
        try:
            for line in read_pty_lines(master_fd):
                tail = (tail + [line])[-_TAIL_LINES:]
                progress = parse_encode_progress(line)
                if progress is not None:
                    yield progress
                elif log_callback:
                    log_callback(line)
            return_code = process.wait()
        finally:
            os.close(master_fd)
            if process.poll() is None:
                self._signal_group(process, signal.SIGKILL)
                self._signal_group(process, signal.SIGCONT)
                process.wait()
            with self._lock:
                self._process = None
                self._paused = False

        output_tail = "\n".join(tail)
        if return_code < 0:
            raise EncodeCancelledError(-return_code, details=output_tail)
        if return_code != 0:
            msg = f"HandBrakeCLI failed with exit code {return_code}"
            raise EncodeError(msg, exit_code=return_code, details=output_tail)

        logger.info(f"Finished encoding {item.dest_path.name}")
        yield 100.0

    def _signal_group(self, process: subprocess.Popen, sig: signal.Signals) -> bool:
        """Signal the encoder's whole process group."""
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"Could not send {sig.name} to HandBrakeCLI: {e}")
            return False
        return True

    def pause(self) -> bool:
        """Suspend the running encode. No-op if idle or already paused."""
        with self._lock:
            if self._process is None:
                if self._starting and not self._pause_pending:
                    self._pause_pending = True
                    return True
                return False
            if self._paused:
                return False
            if self._signal_group(self._process, signal.SIGSTOP):
                self._paused = True
                logger.info("Paused HandBrakeCLI (PID %s)", self._process.pid)
            return self._paused

    def resume(self) -> bool:
        """Continue a suspended encode. No-op if idle or not paused."""
        with self._lock:
            if self._process is None:
                if self._pause_pending:
                    self._pause_pending = False
                    return True
                return False
            if not self._paused:
                return False
            self._signal_group(self._process, signal.SIGCONT)
            self._paused = False
            logger.info("Resumed HandBrakeCLI (PID %s)", self._process.pid)
            return True

    def cancel(self) -> bool:
        """Kill the running encode. No-op if idle and not prepared."""
        with self._lock:
            if self._process is None:
                if self._starting:
                    self._cancel_pending = True
                    return True
                return False
            logger.info("Cancelling HandBrakeCLI (PID %s)", self._process.pid)
            killed = self._signal_group(self._process, signal.SIGKILL)
            if self._paused:
                self._signal_group(self._process, signal.SIGCONT)
                self._paused = False
            return killed
