"""Unit tests for the FFmpeg toolkit with process isolation and timeout enforcement."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from captioncraft.errors import PermanentJobError, ProviderError
from captioncraft.media import FfmpegErrorType, FfmpegResult, FfmpegToolkit, classify_error
from captioncraft.models import MediaConfig


def ok_result():
    return FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0)


@pytest.fixture
def toolkit():
    with patch("captioncraft.media.imageio_ffmpeg.get_ffmpeg_exe", return_value="ffmpeg"):
        yield FfmpegToolkit(MediaConfig(global_timeout_s=60, kill_grace_period_s=1))


class TestErrorClassification:
    """Test FFmpeg error classification for retry logic."""

    def test_classify_permanent_errors(self):
        """Test that permanent errors are classified correctly."""
        permanent_cases = [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "Permission denied",
            "Unsupported codec for output stream",
            "moov atom not found",
        ]

        for stderr in permanent_cases:
            assert classify_error(stderr) == FfmpegErrorType.PERMANENT, stderr

    def test_classify_transient_errors(self):
        """Test that unknown and I/O errors default to transient."""
        transient_cases = [
            "I/O error reading input",
            "Connection refused",
            "Resource temporarily unavailable",
            "Some unknown error message",
        ]

        for stderr in transient_cases:
            assert classify_error(stderr) == FfmpegErrorType.TRANSIENT, stderr


class TestCommandGeneration:
    """Test FFmpeg command generation."""

    def test_extract_audio_command(self, toolkit, tmp_path):
        captured_cmd = []
        toolkit.run = lambda cmd: captured_cmd.append(cmd) or ok_result()

        toolkit._extract_audio(tmp_path / "v1.mp4", tmp_path / "v1.mp3")

        cmd = captured_cmd[0]
        assert cmd[:4] == ["ffmpeg", "-y", "-loglevel", "error"]
        assert cmd[cmd.index("-i") + 1] == str(tmp_path / "v1.mp4")
        assert "-vn" in cmd
        assert cmd[cmd.index("-acodec") + 1] == "libmp3lame"
        assert cmd[-1] == str(tmp_path / "v1.mp3")

    def test_burn_subtitles_command(self, toolkit):
        captured_cmd = []
        toolkit.run = lambda cmd: captured_cmd.append(cmd) or ok_result()

        toolkit._burn_subtitles(
            "tmp/v1_source.mp4", "tmp/v1.srt", "tmp/v1_burned.mp4", None
        )

        cmd = captured_cmd[0]
        assert cmd[cmd.index("-vf") + 1] == "subtitles=filename='tmp/v1.srt'"
        assert cmd[cmd.index("-c:a") + 1] == "copy"
        assert cmd[-1] == "tmp/v1_burned.mp4"

    def test_burn_subtitles_with_style(self, toolkit):
        captured_cmd = []
        toolkit.run = lambda cmd: captured_cmd.append(cmd) or ok_result()

        toolkit._burn_subtitles(
            "in.mp4", "C:\\tmp\\v1.srt", "out.mp4", {"fontSize": 24, "position": "top"}
        )

        vf = captured_cmd[0][captured_cmd[0].index("-vf") + 1]
        assert vf.startswith("subtitles=filename='C\\:\\\\tmp\\\\v1.srt'")
        assert vf.endswith(":force_style='FontSize=24,Alignment=8'")

    def test_download_local_file(self, toolkit, tmp_path):
        stored = tmp_path / "videos" / "v1.mp4"
        stored.parent.mkdir()
        stored.write_bytes(b"video")
        toolkit.run = MagicMock()

        out = toolkit._download(stored.as_uri(), tmp_path / "copy.mp4")

        assert out.read_bytes() == b"video"
        toolkit.run.assert_not_called()

    def test_download_missing_local_file(self, toolkit, tmp_path):
        with pytest.raises(PermanentJobError):
            toolkit._download(str(tmp_path / "missing.mp4"), tmp_path / "copy.mp4")

    def test_download_remote_url(self, toolkit, tmp_path):
        captured_cmd = []
        toolkit.run = lambda cmd: captured_cmd.append(cmd) or ok_result()

        toolkit._download("https://media.test/videos/v1.mp4", tmp_path / "v1.mp4")

        cmd = captured_cmd[0]
        assert cmd[cmd.index("-i") + 1] == "https://media.test/videos/v1.mp4"
        assert cmd[cmd.index("-c") + 1] == "copy"


class TestFailureHandling:
    """Test mapping of FFmpeg failures to job errors."""

    def test_permanent_failure(self, toolkit):
        toolkit.run = lambda cmd: FfmpegResult(
            success=False,
            returncode=1,
            stderr="in.mp4: Invalid data found when processing input",
            duration_s=0.1,
            error_type=FfmpegErrorType.PERMANENT,
        )

        with pytest.raises(PermanentJobError, match="Invalid data found"):
            toolkit._extract_audio("in.mp4", "out.mp3")

    def test_transient_failure(self, toolkit):
        toolkit.run = lambda cmd: FfmpegResult(
            success=False,
            returncode=1,
            stderr="Connection reset by peer",
            duration_s=0.1,
            error_type=FfmpegErrorType.TRANSIENT,
        )

        with pytest.raises(ProviderError) as exc_info:
            toolkit._extract_audio("in.mp4", "out.mp3")
        assert not isinstance(exc_info.value, PermanentJobError)
        assert exc_info.value.provider == "ffmpeg"

    def test_timeout_is_retryable(self, toolkit):
        toolkit.run = lambda cmd: FfmpegResult(
            success=False,
            returncode=-1,
            stderr="",
            duration_s=60.0,
            error_type=FfmpegErrorType.TIMEOUT,
        )

        with pytest.raises(ProviderError, match="timed out after 60s"):
            toolkit._burn_subtitles("in.mp4", "in.srt", "out.mp4", None)


class TestRun:
    """Test subprocess execution."""

    def test_run_success(self, toolkit):
        with patch("subprocess.Popen") as mock_popen:
            process = mock_popen.return_value
            process.communicate.return_value = (None, "")
            process.returncode = 0

            result = toolkit.run(["ffmpeg", "-version"])

        assert result.success
        assert result.error_type is None

    def test_run_failure_classified(self, toolkit):
        with patch("subprocess.Popen") as mock_popen:
            process = mock_popen.return_value
            process.communicate.return_value = (None, "moov atom not found")
            process.returncode = 1

            result = toolkit.run(["ffmpeg", "-i", "broken.mp4"])

        assert not result.success
        assert result.error_type == FfmpegErrorType.PERMANENT

    def test_run_timeout_kills_tree(self, toolkit):
        with patch("subprocess.Popen") as mock_popen:
            process = mock_popen.return_value
            process.communicate.side_effect = subprocess.TimeoutExpired("ffmpeg", 60)

            with patch.object(toolkit, "_kill_process_tree", return_value="") as mock_kill:
                result = toolkit.run(["ffmpeg", "-i", "long.mp4"])

        mock_kill.assert_called_once_with(process)
        assert result.error_type == FfmpegErrorType.TIMEOUT
        assert result.returncode == -1


class TestProcessTreeCleanup:
    """Test process tree cleanup logic."""

    def test_kill_process_tree(self, toolkit):
        mock_process = MagicMock()
        mock_process.pid = 12345
        mock_process.communicate.return_value = (None, "partial stderr")

        mock_parent = MagicMock()
        mock_child1 = MagicMock()
        mock_child2 = MagicMock()

        with patch("psutil.Process") as mock_process_class:
            mock_process_class.return_value = mock_parent
            mock_parent.children.return_value = [mock_child1, mock_child2]

            with patch("psutil.wait_procs") as mock_wait:
                # Child 2 ignores SIGTERM
                mock_wait.return_value = ([mock_parent, mock_child1], [mock_child2])

                stderr = toolkit._kill_process_tree(mock_process)

        mock_parent.terminate.assert_called_once()
        mock_child1.terminate.assert_called_once()
        mock_child2.terminate.assert_called_once()
        mock_child2.kill.assert_called_once()
        mock_parent.kill.assert_not_called()
        assert stderr == "partial stderr"
