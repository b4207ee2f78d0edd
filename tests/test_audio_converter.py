"""
AudioConverter のユニットテスト

ffmpeg / ffprobe の呼び出しは subprocess.run をモックして検証します。
"""

import subprocess
from unittest.mock import patch

import pytest

from voiceblast.audio_converter import AudioConverter
from voiceblast.errors import AudioProcessingError


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestConvertToWav:
    """convert_to_wav() のテスト"""

    @pytest.fixture
    def converter(self):
        return AudioConverter(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe", timeout=5)

    @pytest.fixture
    def mp3_file(self, tmp_path):
        path = tmp_path / "message.mp3"
        path.write_bytes(b"ID3fake-mp3-data")
        return path

    def test_wav_input_is_returned_unchanged(self, converter, tmp_path, make_wav):
        """WAV はそのまま返され ffmpeg は呼ばれない"""
        wav = tmp_path / "message.wav"
        wav.write_bytes(make_wav())

        with patch("voiceblast.audio_converter.subprocess.run") as mock_run:
            assert converter.convert_to_wav(str(wav)) == str(wav)
            mock_run.assert_not_called()

    def test_missing_input_raises(self, converter, tmp_path):
        """入力ファイルがない場合"""
        with pytest.raises(AudioProcessingError, match="Audio file not found"):
            converter.convert_to_wav(str(tmp_path / "missing.mp3"))

    def test_runs_ffmpeg_with_broadcast_format(self, converter, mp3_file):
        """8kHz・モノラル・pcm_s16le で変換し <name>_converted.wav を返す"""
        with patch("voiceblast.audio_converter.subprocess.run", return_value=completed()) as mock_run:
            output = converter.convert_to_wav(str(mp3_file))

        expected_output = str(mp3_file.with_name("message_converted.wav"))
        assert output == expected_output

        command = mock_run.call_args[0][0]
        assert command[0] == "ffmpeg"
        assert command[command.index("-i") + 1] == str(mp3_file)
        assert command[command.index("-acodec") + 1] == "pcm_s16le"
        assert command[command.index("-ar") + 1] == "8000"
        assert command[command.index("-ac") + 1] == "1"
        assert command[-1] == expected_output
        assert mock_run.call_args[1]["timeout"] == 5

    def test_ffmpeg_not_installed(self, converter, mp3_file):
        """ffmpeg が見つからない場合"""
        with patch("voiceblast.audio_converter.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(AudioProcessingError, match="FFmpeg is not installed"):
                converter.convert_to_wav(str(mp3_file))

    def test_invalid_data(self, converter, mp3_file):
        """ffmpeg が入力を解釈できない場合"""
        stderr = "message.mp3: Invalid data found when processing input"
        with patch("voiceblast.audio_converter.subprocess.run", return_value=completed(1, stderr=stderr)):
            with pytest.raises(AudioProcessingError, match="Invalid audio file format"):
                converter.convert_to_wav(str(mp3_file))

    def test_other_failure_removes_partial_output(self, converter, mp3_file):
        """変換失敗時は途中の出力ファイルを削除する"""
        partial = mp3_file.with_name("message_converted.wav")
        partial.write_bytes(b"partial")

        with patch("voiceblast.audio_converter.subprocess.run", return_value=completed(1, stderr="boom\nEncoder failed")):
            with pytest.raises(AudioProcessingError, match="Failed to convert audio: Encoder failed"):
                converter.convert_to_wav(str(mp3_file))

        assert not partial.exists()

    def test_ffmpeg_not_executable(self, converter, mp3_file):
        """ffmpeg のパスが実行できない場合"""
        with patch("voiceblast.audio_converter.subprocess.run", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(AudioProcessingError, match="Failed to run FFmpeg"):
                converter.convert_to_wav(str(mp3_file))

    def test_timeout(self, converter, mp3_file):
        """タイムアウト"""
        error = subprocess.TimeoutExpired(cmd="ffmpeg", timeout=5)
        with patch("voiceblast.audio_converter.subprocess.run", side_effect=error):
            with pytest.raises(AudioProcessingError, match="timed out"):
                converter.convert_to_wav(str(mp3_file))


class TestProbeDuration:
    """probe_duration() のテスト"""

    def test_parses_duration(self):
        with patch("voiceblast.audio_converter.subprocess.run", return_value=completed(stdout="12.345000\n")):
            assert AudioConverter().probe_duration("a.webm") == pytest.approx(12.345)

    def test_returns_none_on_failure(self):
        with patch("voiceblast.audio_converter.subprocess.run", return_value=completed(1, stdout="")):
            assert AudioConverter().probe_duration("a.webm") is None

    def test_returns_none_when_ffprobe_missing(self):
        with patch("voiceblast.audio_converter.subprocess.run", side_effect=FileNotFoundError()):
            assert AudioConverter().probe_duration("a.webm") is None


class TestIsAvailable:
    """is_available() のテスト"""

    def test_not_on_path(self):
        with patch("voiceblast.audio_converter.shutil.which", return_value=None):
            assert AudioConverter(ffmpeg_path="no-such-ffmpeg").is_available() is False

    def test_available(self):
        with patch("voiceblast.audio_converter.shutil.which", return_value="/usr/bin/ffmpeg"), \
                patch("voiceblast.audio_converter.subprocess.run", return_value=completed()):
            assert AudioConverter().is_available() is True
