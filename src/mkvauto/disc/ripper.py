"""MakeMKV integration for disc scanning and ripping."""

import logging
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

from mkvauto.config import MkvautoConfig
from mkvauto.disc.parser import (
    ScanResult,
    calculate_percentage,
    extract_error_message,
    parse_info,
    parse_progress,
    parse_status_message,
)
from mkvauto.error_handling import OperationCancelledError, RipError, ScanError

logger = logging.getLogger(__name__)

_CANCEL_POLL_INTERVAL = 0.2


@dataclass(frozen=True)
class RipUpdate:
    """One item of the rip output stream; exactly one field is set."""

    progress: float | None = None
    status: str | None = None
    log: str | None = None


def _kill_on_cancel(
    process: subprocess.Popen,
    cancel_event: threading.Event | None,
) -> threading.Thread | None:
    """Kill process as soon as cancel_event is set."""
    if cancel_event is None:
        return None

    def watch() -> None:
        while process.poll() is None:
            if cancel_event.wait(_CANCEL_POLL_INTERVAL):
                logger.info("Cancelling makemkvcon (PID %s)", process.pid)
                process.kill()
                return

    watcher = threading.Thread(target=watch, name="makemkv-cancel", daemon=True)
    watcher.start()
    return watcher


class MakeMKVRipper:
    """Interface to makemkvcon for disc scanning and ripping."""

    def __init__(self, config: MkvautoConfig):
        self.config = config
        self.makemkv_con = config.makemkv.binary_path

    def _spawn(self, cmd: list[str]) -> subprocess.Popen:
        logger.debug("Running: %s", " ".join(cmd))
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )

    def scan_disc(
        self,
        device: str | None = None,
        cancel_event: threading.Event | None = None,
        status_callback: Callable[[str], None] | None = None,
    ) -> ScanResult:
        """Scan the disc and return its titles.

        Raises:
            ScanError: makemkvcon could not be run or exited non-zero.
            OperationCancelledError: cancel_event was set during the scan.
        """
        if device is None:
            device = self.config.drive.path

        logger.info(f"Scanning disc on {device}")
        cmd = [self.makemkv_con, "-r", "--progress=-stdout", "info", f"dev:{device}"]

        start_time = time.time()
        try:
            process = self._spawn(cmd)
        except OSError as e:
            msg = f"Failed to start makemkvcon: {e}"
            raise ScanError(msg, original_error=e)

        _kill_on_cancel(process, cancel_event)

        output_lines = []
        last_status = ""
        last_percent: int | None = None
        try:
            if process.stdout is not None:
                for raw_line in process.stdout:
                    line = raw_line.rstrip("\r\n")
                    output_lines.append(line)
                    if status_callback is None:
                        continue

                    status = parse_status_message(line)
                    if status:
                        last_status = status
                        status_callback(status)
                        continue

                    # Only whole-percent changes are reported
                    progress = parse_progress(line)
                    if progress:
                        percent = int(calculate_percentage(*progress))
                        if percent != last_percent:
                            last_percent = percent
                            status_callback(f"{last_status} {percent}%".strip())
            return_code = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        if cancel_event is not None and cancel_event.is_set():
            msg = "Disc scan cancelled"
            raise OperationCancelledError(msg)

        output = "\n".join(output_lines)
        if return_code != 0:
            clean_error = extract_error_message(output)
            msg = f"makemkvcon info failed with exit code {return_code}: {clean_error}"
            raise ScanError(msg, exit_code=return_code, details=clean_error)

        logger.info(f"MakeMKV scan completed in {time.time() - start_time:.1f}s")
        return parse_info(output)

    def rip_title(
        self,
        title_id: int,
        output_dir: Path,
        device: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[RipUpdate]:
        """Rip one title into output_dir, yielding progress, status and log lines.

        Progress is the current-operation percentage; a final 100.0 follows a
        successful exit. MakeMKV picks the output filename itself, use
        find_newest_mkv() afterwards.

        Raises:
            RipError: makemkvcon could not be run or exited non-zero.
            OperationCancelledError: cancel_event was set during the rip.
        """
        if device is None:
            device = self.config.drive.path

        output_dir.mkdir(parents=True, exist_ok=True)

        cmd = [
            self.makemkv_con,
            "-r",
            "--progress=-stdout",
            "mkv",
            f"dev:{device}",
            str(title_id),
            str(output_dir),
        ]

        logger.info(f"Ripping title {title_id} from {device} to {output_dir}")

        try:
            process = self._spawn(cmd)
        except OSError as e:
            msg = f"Failed to start makemkvcon: {e}"
            raise RipError(msg, original_error=e)

        _kill_on_cancel(process, cancel_event)

        tail: list[str] = []
        try:
            if process.stdout is not None:
                for raw_line in process.stdout:
                    line = raw_line.rstrip("\r\n")
                    if not line:
                        continue

                    tail = (tail + [line])[-20:]
                    yield RipUpdate(log=line)

                    status = parse_status_message(line)
                    if status:
                        yield RipUpdate(status=status)

                    counters = parse_progress(line)
                    if counters:
                        yield RipUpdate(progress=calculate_percentage(*counters))
            return_code = process.wait()
        finally:
            # Also reached when the consumer abandons the generator
            if process.poll() is None:
                process.kill()
                process.wait()

        if cancel_event is not None and cancel_event.is_set():
            msg = f"Rip of title {title_id} cancelled"
            raise OperationCancelledError(msg)

        if return_code != 0:
            clean_error = extract_error_message("\n".join(tail))
            msg = f"makemkvcon mkv failed with exit code {return_code}: {clean_error}"
            raise RipError(msg, exit_code=return_code, details=clean_error)

        logger.info(f"Finished ripping title {title_id}")
        yield RipUpdate(progress=100.0)

    def check_version(self) -> str | None:
        """Return makemkvcon's version banner, or None if it cannot run."""
        try:
            result = subprocess.run(
                [self.makemkv_con, "--version"],
                check=False,
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not run makemkvcon: {e}")
            return None

        output = (result.stdout or result.stderr).strip()
        return output.splitlines()[0] if output else None


def find_newest_mkv(directory: Path) -> Path:
    """Return the most recently modified MKV file in directory.

    Raises:
        RipError: No MKV file exists there.
    """
    mkv_files = [
        f for f in directory.iterdir() if f.is_file() and f.suffix.lower() == ".mkv"
    ]
    if not mkv_files:
        msg = f"No MKV files found in {directory}"
        raise RipError(msg)
    return max(mkv_files, key=lambda f: f.stat().st_mtime)
