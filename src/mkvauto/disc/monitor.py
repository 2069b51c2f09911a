"""Disc detection by polling the optical drive status."""

import fcntl
import logging
import os
import queue
import subprocess
import threading
from collections.abc import Iterator
from enum import IntEnum

from mkvauto.disc.media import DetectedDisc

logger = logging.getLogger(__name__)

# linux/cdrom.h
CDROM_DRIVE_STATUS = 0x5326
CDROMEJECT = 0x5309


class DriveStatus(IntEnum):
    """Values returned by the CDROM_DRIVE_STATUS ioctl."""

    NO_INFO = 0
    NO_DISC = 1
    TRAY_OPEN = 2
    DRIVE_NOT_READY = 3
    DISC_OK = 4


def read_drive_status(device: str) -> DriveStatus:
    """Query the drive; any failure reads as NO_INFO."""
    try:
        fd = os.open(device, os.O_RDONLY | os.O_NONBLOCK)
    except OSError as e:
        logger.debug(f"Cannot open {device}: {e}")
        return DriveStatus.NO_INFO

    try:
        status = fcntl.ioctl(fd, CDROM_DRIVE_STATUS, 0)
    except OSError as e:
        logger.debug(f"Drive status ioctl failed on {device}: {e}")
        return DriveStatus.NO_INFO
    finally:
        os.close(fd)

    try:
        return DriveStatus(status)
    except ValueError:
        return DriveStatus.NO_INFO


class DiscMonitor:
    """Emit one event per physical disc insertion."""

    thread: threading.Thread | None = None

    def __init__(
        self,
        device: str = "/dev/sr0",
        poll_interval: float = 2.0,
        settle_delay: float = 2.0,
    ):
        self.device = device
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.thread = None

    def drive_status(self) -> DriveStatus:
        return read_drive_status(self.device)

    def is_disc_present(self) -> bool:
        """Check if there's currently a readable disc in the drive."""
        return self.drive_status() == DriveStatus.DISC_OK

    def events(self, stop_event: threading.Event) -> Iterator[DetectedDisc]:
        """Poll the drive until stop_event is set, yielding each insertion.

        The generator only polls while the consumer pulls, so a slow consumer
        stalls detection instead of losing events. A disc already in the
        drive when polling starts counts as an insertion.
        """
        last_status = DriveStatus.NO_DISC

        while not stop_event.wait(self.poll_interval):
            status = self.drive_status()

            if status == DriveStatus.NO_INFO:
                # Unknown state never produces an event
                continue

            if last_status != DriveStatus.DISC_OK and status == DriveStatus.DISC_OK:
                logger.debug(f"Disc appeared on {self.device}, waiting to settle")
                if stop_event.wait(self.settle_delay):
                    return

                status = self.drive_status()
                if status == DriveStatus.DISC_OK:
                    disc = DetectedDisc(device=self.device)
                    logger.info(f"Detected disc on {self.device}")
                    yield disc

            last_status = status

    def start(self, stop_event: threading.Event) -> "queue.Queue[DetectedDisc]":
        """Run the polling loop in a background thread.

        Events are handed off through a queue with room for exactly one
        pending disc; the monitor blocks until the consumer takes it.
        """
        handoff: queue.Queue[DetectedDisc] = queue.Queue(maxsize=1)

        def run() -> None:
            logger.info(f"Starting disc monitoring on {self.device}")
            for disc in self.events(stop_event):
                while not stop_event.is_set():
                    try:
                        handoff.put(disc, timeout=self.poll_interval)
                        break
                    except queue.Full:
                        continue
            logger.info("Stopped disc monitoring")

        self.thread = threading.Thread(target=run, name="disc-monitor", daemon=True)
        self.thread.start()
        return handoff


def eject_disc(device: str = "/dev/sr0", timeout: int = 30) -> bool:
    """Eject the disc from the drive."""
    try:
        result = subprocess.run(
            ["eject", device],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )

        if result.returncode == 0:
            logger.info(f"Successfully ejected disc from {device}")
            return True
        logger.warning(f"eject command failed: {result.stderr.strip()}")

    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not run eject command: {e}")

    return _eject_via_ioctl(device)


def _eject_via_ioctl(device: str) -> bool:
    try:
        fd = os.open(device, os.O_RDONLY | os.O_NONBLOCK)
    except OSError as e:
        logger.error(f"Failed to eject disc: cannot open {device}: {e}")
        return False

    try:
        fcntl.ioctl(fd, CDROMEJECT, 0)
    except OSError as e:
        logger.error(f"Failed to eject disc: ioctl eject failed: {e}")
        return False
    finally:
        os.close(fd)

    logger.info(f"Ejected disc from {device} via ioctl")
    return True
