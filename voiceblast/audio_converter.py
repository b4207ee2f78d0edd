"""
音声変換モジュール (Audio Converter Module)

ffmpeg / ffprobe を呼び出し、音声一斉配信 API が受け付ける形式
（8kHz・モノラル・16bit PCM の WAV）への変換と再生時間の取得を行います。
"""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from .errors import AudioProcessingError
from .log import get_logger


class AudioConverter:
    """
    ffmpeg による音声変換

    Attributes:
        ffmpeg_path: ffmpeg 実行ファイル
        ffprobe_path: ffprobe 実行ファイル
    """

    SAMPLE_RATE = 8000
    CHANNELS = 1
    CODEC = "pcm_s16le"
    CONVERTED_SUFFIX = "_converted.wav"

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe", timeout: int = 300):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.logger = get_logger(__name__)

    def is_available(self) -> bool:
        """ffmpeg が実行可能か確認"""
        if shutil.which(self.ffmpeg_path) is None:
            return False
        try:
            result = subprocess.run(
                [self.ffmpeg_path, "-version"],
                capture_output=True,
                text=True,
                timeout=10
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return result.returncode == 0

    @classmethod
    def converted_path_for(cls, input_path: str) -> str:
        """変換後のファイルパス（<name>_converted.wav）"""
        path = Path(input_path)
        return str(path.with_name(f"{path.stem}{cls.CONVERTED_SUFFIX}"))

    def convert_to_wav(self, input_path: str) -> str:
        """
        音声ファイルを WAV に変換

        拡張子が .wav の場合は変換せず入力パスをそのまま返します。

        Args:
            input_path: 入力ファイルのパス

        Returns:
            WAV ファイルのパス

        Raises:
            AudioProcessingError: 入力が存在しない、ffmpeg がない、変換に失敗した場合
        """
        if not os.path.exists(input_path):
            raise AudioProcessingError(f"Audio file not found: {input_path}")

        if Path(input_path).suffix.lower() == ".wav":
            self.logger.debug("audio_already_wav", path=input_path)
            return input_path

        output_path = self.converted_path_for(input_path)
        command = [
            self.ffmpeg_path, "-y",
            "-i", input_path,
            "-acodec", self.CODEC,
            "-ar", str(self.SAMPLE_RATE),
            "-ac", str(self.CHANNELS),
            "-f", "wav",
            output_path,
        ]

        self.logger.info("audio_conversion_started", input_path=input_path, output_path=output_path)

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise AudioProcessingError(
                "FFmpeg is not installed or not found in PATH. Please install FFmpeg to convert audio files."
            ) from e
        except subprocess.TimeoutExpired as e:
            self._remove_quietly(output_path)
            raise AudioProcessingError(f"Failed to convert audio: timed out after {self.timeout}s") from e
        except OSError as e:
            self.logger.error("audio_conversion_spawn_failed", ffmpeg_path=self.ffmpeg_path, error=str(e))
            raise AudioProcessingError(f"Failed to run FFmpeg ({self.ffmpeg_path}): {e}") from e

        if result.returncode != 0:
            self._remove_quietly(output_path)
            stderr = (result.stderr or "").strip()
            self.logger.error(
                "audio_conversion_failed",
                input_path=input_path,
                returncode=result.returncode,
                stderr=stderr[-2000:]
            )
            if "Invalid data found" in stderr:
                raise AudioProcessingError(
                    "Invalid audio file format. Please ensure the file is a valid audio file."
                )
            raise AudioProcessingError(f"Failed to convert audio: {stderr.splitlines()[-1] if stderr else 'unknown error'}")

        self.logger.info("audio_conversion_completed", output_path=output_path)
        return output_path

    def probe_duration(self, path: str) -> Optional[float]:
        """
        ffprobe で再生時間（秒）を取得

        取得できない場合は None を返します。
        """
        try:
            result = subprocess.run(
                [
                    self.ffprobe_path, "-v", "error",
                    "-show_entries", "format=duration",
                    "-of", "default=noprint_wrappers=1:nokey=1",
                    path,
                ],
                capture_output=True,
                text=True,
                timeout=30
            )
            return float(result.stdout.strip())
        except (OSError, subprocess.SubprocessError, ValueError):
            self.logger.debug("audio_duration_probe_failed", path=path)
            return None

    def _remove_quietly(self, path: str) -> None:
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self.logger.warning("temporary_file_cleanup_failed", path=path, error=str(e))
