"""
音声トリミングモジュール (Audio Trimming Module)

PCM WAV のデコード、波形表示用の最小値・最大値ビニング、
サンプル単位のトリミング、16bit PCM WAV への再エンコードを提供します。
サンプルは [-1.0, 1.0] の float32 で、形状は (フレーム数, チャンネル数) です。
"""

import io
import math
import wave
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from .errors import AudioProcessingError


@dataclass
class PCMAudio:
    """
    デコード済み音声

    Attributes:
        samples: (フレーム数, チャンネル数) の float32 配列
        sample_rate: サンプルレート (Hz)
    """
    samples: np.ndarray
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        """再生時間（秒）"""
        return self.frames / self.sample_rate if self.sample_rate else 0.0


def _pcm_to_float(raw: bytes, sample_width: int) -> np.ndarray:
    if sample_width == 1:
        data = np.frombuffer(raw, dtype=np.uint8).astype(np.float32)
        return (data - 128.0) / 128.0
    if sample_width == 2:
        return np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
    if sample_width == 3:
        triplets = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        values = triplets[:, 0] | (triplets[:, 1] << 8) | (triplets[:, 2] << 16)
        # 24bit の符号拡張
        values = np.where(values & 0x800000, values - 0x1000000, values)
        return values.astype(np.float32) / 8388608.0
    if sample_width == 4:
        return (np.frombuffer(raw, dtype="<i4").astype(np.float64) / 2147483648.0).astype(np.float32)
    raise AudioProcessingError(f"Unsupported sample width: {sample_width * 8} bit")


def decode_wav(data: bytes) -> PCMAudio:
    """
    PCM WAV をデコード

    Args:
        data: WAV ファイルのバイト列

    Returns:
        PCMAudio

    Raises:
        AudioProcessingError: WAV として解釈できない場合
    """
    try:
        with wave.open(io.BytesIO(data), "rb") as wav:
            channels = wav.getnchannels()
            sample_width = wav.getsampwidth()
            sample_rate = wav.getframerate()
            raw = wav.readframes(wav.getnframes())
    except (wave.Error, EOFError) as e:
        raise AudioProcessingError(f"Invalid WAV data: {e}") from e

    if channels < 1 or sample_rate <= 0:
        raise AudioProcessingError("Invalid WAV header")

    flat = _pcm_to_float(raw, sample_width)
    usable = (flat.shape[0] // channels) * channels
    samples = flat[:usable].reshape(-1, channels)
    return PCMAudio(samples=samples, sample_rate=sample_rate)


def read_wav_file(path: str) -> PCMAudio:
    """WAV ファイルを読み込んでデコード"""
    with open(path, "rb") as f:
        return decode_wav(f.read())


def compute_peaks(audio: PCMAudio, bins: int) -> List[Tuple[float, float]]:
    """
    波形表示用のピークを計算

    先頭チャンネルを bins 個の区間に分け、各区間の (最小値, 最大値) を返します。
    1区間あたりのサンプル数は frames // bins で、端数のサンプルは使いません。
    フレーム数が bins より少ない場合は空リストを返します。

    Args:
        audio: デコード済み音声
        bins: 区間数（描画幅のピクセル数）

    Returns:
        (最小値, 最大値) のリスト
    """
    if bins <= 0:
        raise AudioProcessingError("bins must be a positive integer")

    samples_per_bin = audio.frames // bins
    if samples_per_bin == 0:
        return []

    channel = audio.samples[: samples_per_bin * bins, 0].reshape(bins, samples_per_bin)
    minimums = channel.min(axis=1)
    maximums = channel.max(axis=1)
    return [(float(lo), float(hi)) for lo, hi in zip(minimums, maximums)]


def trim(audio: PCMAudio, start: float, end: float) -> PCMAudio:
    """
    指定範囲を切り出す

    開始・終了サンプルは floor(秒 * サンプルレート) で求め、長さは最低1フレームです。
    元の音声の末尾を超える部分は無音で埋めます。

    Args:
        audio: デコード済み音声
        start: 開始位置（秒）
        end: 終了位置（秒）

    Returns:
        切り出した PCMAudio

    Raises:
        AudioProcessingError: 範囲が不正な場合
    """
    if not (math.isfinite(start) and math.isfinite(end)) or start < 0 or end <= start:
        raise AudioProcessingError(f"Invalid trim range: {start} - {end}")

    start_sample = int(math.floor(start * audio.sample_rate))
    end_sample = int(math.floor(end * audio.sample_rate))
    new_length = max(1, end_sample - start_sample)

    trimmed = np.zeros((new_length, audio.channels), dtype=np.float32)
    available = max(0, min(new_length, audio.frames - start_sample))
    if available:
        trimmed[:available] = audio.samples[start_sample:start_sample + available]

    return PCMAudio(samples=trimmed, sample_rate=audio.sample_rate)


def encode_wav(audio: PCMAudio) -> bytes:
    """
    16bit PCM WAV にエンコード

    サンプルを [-1, 1] にクリップし 0x7FFF 倍して 0 方向に切り捨てます。
    ヘッダーは 44 バイトの標準 RIFF ヘッダーです。
    """
    pcm = (np.clip(audio.samples, -1.0, 1.0) * 0x7FFF).astype("<i2")

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(audio.channels)
        wav.setsampwidth(2)
        wav.setframerate(audio.sample_rate)
        wav.writeframes(pcm.tobytes())
    return buffer.getvalue()


def format_time(seconds: float) -> str:
    """秒を m:ss.s 形式に整形。不正値は 0:00.0"""
    if not seconds or not math.isfinite(seconds) or seconds < 0:
        return "0:00.0"
    minutes = int(seconds // 60)
    secs = f"{seconds % 60:.1f}".rjust(4, "0")
    return f"{minutes}:{secs}"
