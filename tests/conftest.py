"""
テスト共通フィクスチャ (Shared Test Fixtures)
"""

import io
import wave

import numpy as np
import pytest

from voiceblast.config import Config
from voiceblast.storage import SQLiteStorage


def _make_wav(duration=1.0, sample_rate=8000, channels=1, frequency=440.0, amplitude=0.5):
    frames = int(duration * sample_rate)
    t = np.arange(frames) / sample_rate
    tone = amplitude * np.sin(2 * np.pi * frequency * t)
    samples = np.repeat(tone[:, None], channels, axis=1)
    pcm = (samples * 32767).astype("<i2")

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm.tobytes())
    return buffer.getvalue()


@pytest.fixture
def make_wav():
    """正弦波の 16bit PCM WAV バイト列を生成する関数"""
    return _make_wav


@pytest.fixture
def test_config(tmp_path):
    """テスト用の設定を作成"""
    return Config(
        broadcast_base_url="https://broadcast.example.com/api",
        broadcast_api_user="test_user",
        broadcast_api_pass="test_pass",
        broadcast_blast_url="https://broadcast.example.com/api/do_blast",
        broadcast_report_url="https://broadcast.example.com/api/get_report",
        broadcast_timeout=30,
        default_caller_id="09610000000",
        dial_prefix="88",
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        max_upload_size_mb=5,
        allowed_mime_types=["audio/mpeg", "audio/wav", "audio/x-wav", "audio/wave", "audio/webm", "audio/ogg"],
        ffmpeg_path="ffmpeg",
        ffprobe_path="ffprobe",
        cors_origin="http://localhost:3000",
        log_level="DEBUG"
    )


@pytest.fixture
def storage(tmp_path):
    """テスト用の SQLiteStorage"""
    return SQLiteStorage(str(tmp_path / "test.db"))
