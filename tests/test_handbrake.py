"""Tests for HandBrakeCLI supervision."""

import os
import signal
import sys
import threading
import time
from unittest.mock import Mock, patch

import pytest

from mkvauto.config import HandBrakeProfile, MkvautoConfig
from mkvauto.disc.media import MediaKind
from mkvauto.encode.handbrake import (
    HandBrakeEncoder,
    parse_encode_progress,
    read_pty_lines,
)
from mkvauto.error_handling import EncodeCancelledError, EncodeError

linux_only = pytest.mark.skipif(
    not sys.platform.startswith("linux"),
    reason="needs a Linux pseudo-terminal",
)


@pytest.fixture
def encoder(config):
    return HandBrakeEncoder(config)


def pipe_with_output(data: bytes) -> tuple[int, int]:
    """A pipe pre-filled with data, standing in for openpty()."""
    read_fd, write_fd = os.pipe()
    os.write(write_fd, data)
    return read_fd, write_fd


class TestParseEncodeProgress:
    """Test progress extraction."""

    def test_encoding_line(self):
        """Test the classic status line."""
        line = "Encoding: task 1 of 1, 45.67 % (120.50 fps, avg 118.20 fps, ETA 00h12m03s)"
        assert parse_encode_progress(line) == 45.67

    def test_progress_line(self):
        """Test the alternative prefix."""
        assert parse_encode_progress("Progress: 99.10%") == 99.1

    def test_other_lines(self):
        """Test non-progress output."""
        assert parse_encode_progress("[12:00:00] starting job") is None
        assert parse_encode_progress("Encoding: task 1 of 1") is None


class TestReadPtyLines:
    """Test splitting terminal output."""

    def test_splits_on_cr_and_lf(self):
        """Test carriage returns end lines and empty lines are dropped."""
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"one\r\rtwo\nthree\r\npartial")
        os.close(write_fd)
        try:
            lines = list(read_pty_lines(read_fd))
        finally:
            os.close(read_fd)

        assert lines == ["one", "two", "three", "partial"]

    def test_invalid_utf8_replaced(self):
        """Test undecodable bytes do not stop reading."""
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"bad \xff byte\n")
        os.close(write_fd)
        try:
            lines = list(read_pty_lines(read_fd))
        finally:
            os.close(read_fd)

        assert lines == ["bad � byte"]

    def test_read_error_ends_stream(self):
        """Test EIO from a closed terminal ends the stream."""
        with patch("mkvauto.encode.handbrake.os.read", side_effect=OSError(5, "EIO")):
            assert list(read_pty_lines(99)) == []


class TestBuildCommand:
    """Test HandBrakeCLI argument construction."""

    def test_minimal_command(self, encoder, make_item):
        """Test the command without any profile settings."""
        item = make_item()

        cmd = encoder.build_command(item)

        assert cmd == [
            "HandBrakeCLI",
            "-i",
            str(item.source_path),
            "-o",
            str(item.dest_path),
        ]

    def test_profile_per_media_kind(self, temp_dir, make_item):
        """Test Blu-ray and DVD use their own profiles."""
        config = MkvautoConfig(
            output_dir=temp_dir / "out",
            state_dir=temp_dir / "state",
            handbrake={
                "presets_dir": str(temp_dir / "presets"),
                "threads": 4,
                "bluray": {
                    "preset_file": "bluray.json",
                    "preset_name": "Blu-ray AV1",
                    "audio_languages": ["eng", "jpn"],
                    "subtitle_languages": ["eng"],
                },
                "dvd": {"preset_file": "dvd.json"},
            },
        )
        encoder = HandBrakeEncoder(config)

        bluray_cmd = encoder.build_command(make_item(media_kind=MediaKind.BLURAY))
        dvd_cmd = encoder.build_command(make_item(media_kind=MediaKind.DVD))

        assert bluray_cmd[5:] == [
            "--preset-import-file",
            str(temp_dir / "presets" / "bluray.json"),
            "--preset",
            "Blu-ray AV1",
            "--audio-lang-list",
            "eng,jpn",
            "--first-audio",
            "--subtitle-lang-list",
            "eng",
            "--encopts",
            "threads=4",
        ]
        assert dvd_cmd[5:] == [
            "--preset-import-file",
            str(temp_dir / "presets" / "dvd.json"),
            "--encopts",
            "threads=4",
        ]

    def test_preset_file_without_presets_dir(self, encoder, make_item):
        """Test a bare preset filename is passed through."""
        encoder.config.handbrake.dvd = HandBrakeProfile(preset_file="/abs/dvd.json")

        cmd = encoder.build_command(make_item())

        assert cmd[5:] == ["--preset-import-file", "/abs/dvd.json"]

    def test_profile_for(self, encoder):
        """Test profile lookup."""
        assert encoder.profile_for(MediaKind.BLURAY) is encoder.config.handbrake.bluray
        assert encoder.profile_for(MediaKind.DVD) is encoder.config.handbrake.dvd


class TestEncodeMocked:
    """Test encode() with a mocked process."""

    def run_encode(self, encoder, item, output: bytes, return_code: int):
        process = Mock(pid=4321)
        process.wait.return_value = return_code
        process.poll.return_value = return_code
        logs: list[str] = []
        with patch(
            "mkvauto.encode.handbrake.pty.openpty",
            return_value=pipe_with_output(output),
        ), patch(
            "mkvauto.encode.handbrake.subprocess.Popen",
            return_value=process,
        ) as mock_popen:
            progress = list(encoder.encode(item, log_callback=logs.append))
        return progress, logs, mock_popen

    def test_success(self, encoder, source_item):
        """Test progress is yielded and other lines are logged."""
        output = (
            b"[10:00:00] Starting work\n"
            b"Encoding: task 1 of 1, 10.00 %\r"
            b"Encoding: task 1 of 1, 55.50 % (30.0 fps)\r"
            b"Encode done!\n"
        )

        progress, logs, mock_popen = self.run_encode(encoder, source_item, output, 0)

        assert progress == [10.0, 55.5, 100.0]
        assert logs == ["[10:00:00] Starting work", "Encode done!"]
        assert mock_popen.call_args.kwargs["start_new_session"] is True
        assert not encoder.is_running

    def test_failure(self, encoder, source_item):
        """Test a non-zero exit raises EncodeError with the output tail."""
        with pytest.raises(EncodeError) as exc_info:
            self.run_encode(encoder, source_item, b"Invalid preset\n", 3)

        assert not isinstance(exc_info.value, EncodeCancelledError)
        assert exc_info.value.exit_code == 3
        assert "Invalid preset" in exc_info.value.details

    def test_killed_by_signal(self, encoder, source_item):
        """Test a signal death raises EncodeCancelledError."""
        with pytest.raises(EncodeCancelledError) as exc_info:
            self.run_encode(encoder, source_item, b"", -signal.SIGKILL)

        assert exc_info.value.signal_number == signal.SIGKILL

    def test_missing_source(self, encoder, make_item):
        """Test a missing source fails before starting HandBrake."""
        with pytest.raises(EncodeError, match="Source file not found"):
            list(encoder.encode(make_item("gone.mkv")))

    def test_launch_failure(self, encoder, source_item):
        """Test a missing binary raises EncodeError."""
        with patch(
            "mkvauto.encode.handbrake.subprocess.Popen",
            side_effect=FileNotFoundError("HandBrakeCLI"),
        ):
            with pytest.raises(EncodeError, match="Failed to start HandBrakeCLI"):
                list(encoder.encode(source_item))

        assert not encoder.is_running


class TestRequestsBeforeLaunch:
    """Test control requests made between prepare() and the process start."""

    def start(self, encoder, item, return_code=0, on_popen=None):
        process = Mock(pid=4321)
        process.wait.return_value = return_code
        process.poll.return_value = return_code

        def popen(*args, **kwargs):
            if on_popen:
                on_popen()
            return process

        with patch(
            "mkvauto.encode.handbrake.pty.openpty",
            return_value=pipe_with_output(b"Encoding: task 1 of 1, 50.00 %\r"),
        ), patch(
            "mkvauto.encode.handbrake.subprocess.Popen",
            side_effect=popen,
        ) as mock_popen:
            progress = list(encoder.encode(item))
        return progress, mock_popen

    def test_cancel_before_encode_starts(self, encoder, source_item):
        """Test a held cancel stops the encode without launching HandBrake."""
        encoder.prepare()
        assert encoder.cancel()

        with patch("mkvauto.encode.handbrake.subprocess.Popen") as mock_popen:
            with pytest.raises(EncodeCancelledError):
                list(encoder.encode(source_item))

        mock_popen.assert_not_called()
        assert not encoder.cancel()

    @patch("mkvauto.encode.handbrake.os.killpg")
    def test_cancel_while_launching(self, mock_killpg, encoder, source_item):
        """Test a cancel arriving during launch kills the new process."""
        encoder.prepare()

        with pytest.raises(EncodeCancelledError):
            self.start(
                encoder,
                source_item,
                return_code=-signal.SIGKILL,
                on_popen=encoder.cancel,
            )

        mock_killpg.assert_any_call(4321, signal.SIGKILL)

    @patch("mkvauto.encode.handbrake.os.killpg")
    def test_pause_before_launch(self, mock_killpg, encoder, source_item):
        """Test a held pause stops the process as soon as it starts."""
        encoder.prepare()
        assert encoder.pause()
        assert not encoder.pause()

        progress, _ = self.start(encoder, source_item)

        assert progress == [50.0, 100.0]
        assert mock_killpg.call_args_list == [((4321, signal.SIGSTOP),)]

    @patch("mkvauto.encode.handbrake.os.killpg")
    def test_resume_withdraws_held_pause(self, mock_killpg, encoder, source_item):
        """Test resuming before launch leaves the process running."""
        encoder.prepare()
        encoder.pause()
        assert encoder.resume()

        self.start(encoder, source_item)

        mock_killpg.assert_not_called()

    def test_launch_failure_drops_requests(self, encoder, source_item):
        """Test held requests do not carry over to the next encode."""
        encoder.prepare()
        encoder.pause()

        with patch(
            "mkvauto.encode.handbrake.subprocess.Popen",
            side_effect=FileNotFoundError("HandBrakeCLI"),
        ):
            with pytest.raises(EncodeError):
                list(encoder.encode(source_item))

        assert not encoder.cancel()
        assert not encoder.resume()


class TestSignals:
    """Test pause, resume and cancel signalling."""

    @pytest.fixture
    def running(self, encoder):
        encoder._process = Mock(pid=555)
        encoder._process.poll.return_value = None
        return encoder

    @patch("mkvauto.encode.handbrake.os.killpg")
    def test_idle_is_noop(self, mock_killpg, encoder):
        """Test signals are not sent without a running encode."""
        assert not encoder.pause()
        assert not encoder.resume()
        assert not encoder.cancel()
        mock_killpg.assert_not_called()

    @patch("mkvauto.encode.handbrake.os.killpg")
    def test_pause_resume(self, mock_killpg, running):
        """Test SIGSTOP and SIGCONT go to the process group once."""
        assert running.pause()
        assert running.is_paused
        assert not running.pause()

        assert running.resume()
        assert not running.is_paused
        assert not running.resume()

        assert mock_killpg.call_args_list == [
            ((555, signal.SIGSTOP),),
            ((555, signal.SIGCONT),),
        ]

    @patch("mkvauto.encode.handbrake.os.killpg")
    def test_cancel_paused_encode(self, mock_killpg, running):
        """Test cancelling a paused encode also continues it so it can die."""
        running.pause()
        mock_killpg.reset_mock()

        assert running.cancel()

        assert mock_killpg.call_args_list == [
            ((555, signal.SIGKILL),),
            ((555, signal.SIGCONT),),
        ]
        assert not running.is_paused

    @patch("mkvauto.encode.handbrake.os.killpg", side_effect=ProcessLookupError)
    def test_process_already_gone(self, mock_killpg, running):
        """Test signalling an exited process reports False."""
        assert not running.pause()
        assert not running.cancel()

    def test_is_running(self, running):
        """Test is_running follows the process."""
        assert running.is_running
        running._process.poll.return_value = 0
        assert not running.is_running


@linux_only
class TestEncodeProcess:
    """Run encode() against a real child process on a pseudo-terminal."""

    def test_real_encode(self, script_config, source_item):
        """Test progress from a child writing carriage-return status lines."""
        config = script_config(
            "printf 'Encoding: task 1 of 1, 25.00 %%\\r'\n"
            "printf 'Encoding: task 1 of 1, 75.00 %%\\r'\n"
            "echo 'Encode done!'",
        )
        logs: list[str] = []

        progress = list(HandBrakeEncoder(config).encode(source_item, log_callback=logs.append))

        assert progress == [25.0, 75.0, 100.0]
        assert logs == ["Encode done!"]
        assert source_item.dest_path.parent.is_dir()

    def test_real_cancel(self, script_config, source_item):
        """Test cancel() kills the child and raises EncodeCancelledError."""
        config = script_config("sleep 30")
        encoder = HandBrakeEncoder(config)

        def cancel_when_running():
            deadline = time.monotonic() + 5
            while not encoder.is_running and time.monotonic() < deadline:
                time.sleep(0.01)
            encoder.cancel()

        canceller = threading.Thread(target=cancel_when_running)
        canceller.start()
        start = time.monotonic()
        try:
            with pytest.raises(EncodeCancelledError):
                list(encoder.encode(source_item))
        finally:
            canceller.join()

        assert time.monotonic() - start < 10
        assert not encoder.is_running
