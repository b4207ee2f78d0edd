"""
録音マネージャーモジュール (Recording Manager Module)

録音ファイルのアップロード、メタデータ管理、削除、
波形ピークの計算とサーバー側トリミングを担当します。
"""

import os
import random
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .audio import PCMAudio, compute_peaks, decode_wav, encode_wav, format_time, read_wav_file, trim
from .audio_converter import AudioConverter
from .errors import AudioProcessingError, ConflictError, NotFoundError, ValidationError
from .log import get_logger
from .models import Recording, utcnow
from .storage import Storage, StorageError
from .validation import validate_recording_update, validate_recording_upload


# MIME タイプから保存時の拡張子を決める（元ファイル名に拡張子がない場合）
MIME_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
}

WAV_MIME_TYPES = ("audio/wav", "audio/x-wav", "audio/wave")


def base_mime_type(mime_type: Optional[str]) -> str:
    """パラメータを除いた MIME タイプ（例: audio/webm;codecs=opus -> audio/webm）"""
    return (mime_type or "").split(";", 1)[0].strip().lower()


def generate_unique_filename(original_name: Optional[str], mime_type: str) -> str:
    """<ミリ秒タイムスタンプ>-<乱数>.<拡張子> 形式のファイル名を生成"""
    extension = Path(original_name or "").suffix.lstrip(".").lower()
    if not extension:
        extension = MIME_EXTENSIONS.get(base_mime_type(mime_type), "bin")
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}.{extension}"


class RecordingManager:
    """
    録音データを管理するクラス

    Storage レイヤーでメタデータを永続化し、音声ファイルは upload_dir に保存します。
    """

    DEFAULT_UPLOAD_DIR = "uploads"
    DEFAULT_WAVEFORM_BINS = 800
    MAX_WAVEFORM_BINS = 10000

    def __init__(
        self,
        storage: Storage,
        upload_dir: Optional[str] = None,
        converter: Optional[AudioConverter] = None,
        allowed_mime_types: Optional[List[str]] = None,
        max_upload_bytes: Optional[int] = None
    ):
        """
        RecordingManagerを初期化

        Args:
            storage: データ永続化に使用するStorageインスタンス
            upload_dir: 録音ファイル保存ディレクトリ
            converter: 音声変換（非 WAV の波形計算・トリミングに使用）
            allowed_mime_types: 受け付ける MIME タイプ
            max_upload_bytes: アップロード上限（バイト）
        """
        self.storage = storage
        self.upload_dir = upload_dir or self.DEFAULT_UPLOAD_DIR
        self.converter = converter or AudioConverter()
        self.allowed_mime_types = [m.lower() for m in (allowed_mime_types or list(MIME_EXTENSIONS))]
        self.max_upload_bytes = max_upload_bytes
        self.logger = get_logger(__name__)

        Path(self.upload_dir).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def upload(self, file: Any, form: Mapping[str, Any]) -> Recording:
        """
        録音ファイルをアップロード

        Args:
            file: werkzeug の FileStorage（filename, mimetype, save() を持つ）
            form: customName, duration, trimStart, trimEnd を含むフォーム値

        Returns:
            保存した録音

        Raises:
            ValidationError: ファイルがない、MIME タイプが不正、フォーム値が不正な場合
            ConflictError: 同名の録音が存在する場合
        """
        if file is None or not getattr(file, "filename", None):
            raise ValidationError("No audio file provided", error_type="missing_file")

        mime_type = base_mime_type(file.mimetype)
        if mime_type not in self.allowed_mime_types:
            raise ValidationError(
                f"Invalid file type: {mime_type or 'unknown'}. Only audio files are allowed.",
                error_type="invalid_file_type",
                details={"allowedMimeTypes": self.allowed_mime_types}
            )

        values = validate_recording_upload(form)

        if self.storage.get_recording_by_name(values["custom_name"]) is not None:
            raise ConflictError("Recording name already exists")

        file_name = generate_unique_filename(file.filename, mime_type)
        file_path = os.path.join(self.upload_dir, file_name)
        file.save(file_path)

        try:
            file_size = os.path.getsize(file_path)
            if self.max_upload_bytes is not None and file_size > self.max_upload_bytes:
                raise ValidationError(
                    "File too large",
                    error_type="file_too_large",
                    status_code=413
                )

            duration = values["duration"]
            if duration is None:
                duration = self._detect_duration(file_path, mime_type)

            now = utcnow()
            recording = self.storage.create_recording(Recording(
                id=None,
                custom_name=values["custom_name"],
                original_name=file.filename,
                file_name=file_name,
                file_path=file_path,
                file_size=file_size,
                duration=duration,
                mime_type=mime_type,
                trim_start=values["trim_start"],
                trim_end=values["trim_end"],
                uploaded_at=now,
                created_at=now,
                updated_at=now,
            ))
        except (ValidationError, StorageError):
            self._remove_file(file_path)
            raise

        self.logger.info(
            "recording_uploaded",
            recording_id=recording.id,
            custom_name=recording.custom_name,
            file_size=recording.file_size,
            mime_type=recording.mime_type
        )
        return recording

    def get(self, recording_id: int) -> Recording:
        """ID で録音を取得。存在しない場合は NotFoundError"""
        recording = self.storage.get_recording(recording_id)
        if recording is None:
            raise NotFoundError("Recording not found")
        return recording

    def list_recordings(self) -> List[Recording]:
        return self.storage.list_recordings()

    def update(self, recording_id: int, data: Mapping[str, Any]) -> Recording:
        """
        録音メタデータを更新

        表示名を変更する場合は他の録音との重複を確認します。
        """
        recording = self.get(recording_id)
        updates = validate_recording_update(data)

        new_name = updates.get("custom_name")
        if new_name and new_name != recording.custom_name:
            existing = self.storage.get_recording_by_name(new_name)
            if existing is not None and existing.id != recording_id:
                raise ConflictError("Recording name already exists")

        trim_start = updates.get("trim_start", recording.trim_start)
        trim_end = updates.get("trim_end", recording.trim_end)
        if trim_end is not None and trim_end <= trim_start:
            raise ValidationError(
                "Validation failed",
                details=[{"field": "trimEnd", "message": "Trim end must be greater than trim start"}]
            )

        updated = replace(recording, updated_at=utcnow(), **updates)
        self.storage.update_recording(updated)

        self.logger.info("recording_updated", recording_id=recording_id, fields=sorted(updates))
        return updated

    def delete(self, recording_id: int) -> None:
        """
        録音を削除

        キャンペーンから参照されている録音は削除できません。
        """
        recording = self.get(recording_id)

        references = self.storage.count_calls_for_recording(recording_id)
        if references:
            raise ConflictError(
                "Recording is used by call campaigns and cannot be deleted",
                details={"callCount": references}
            )

        self._remove_file(recording.file_path)
        self.storage.delete_recording(recording_id)
        self.logger.info("recording_deleted", recording_id=recording_id)

    # ------------------------------------------------------------------
    # ファイル
    # ------------------------------------------------------------------

    def resolve_file(self, recording_id: int) -> Recording:
        """ファイルが存在する録音を取得。ファイルがない場合は NotFoundError"""
        recording = self.get(recording_id)
        if not os.path.exists(recording.file_path):
            raise NotFoundError("Recording file not found")
        return recording

    @staticmethod
    def download_name(recording: Recording) -> str:
        """ダウンロード時のファイル名（表示名 + 保存ファイルの拡張子）"""
        return f"{recording.custom_name}{Path(recording.file_name).suffix}"

    # ------------------------------------------------------------------
    # 波形・トリミング
    # ------------------------------------------------------------------

    def waveform(self, recording_id: int, bins: Optional[int] = None) -> Dict[str, Any]:
        """
        波形表示用のピークを計算

        Args:
            recording_id: 録音 ID
            bins: 区間数（デフォルト 800）

        Returns:
            sampleRate, channels, duration, bins, peaks を含む辞書
        """
        if bins is None:
            bins = self.DEFAULT_WAVEFORM_BINS
        if bins < 1 or bins > self.MAX_WAVEFORM_BINS:
            raise ValidationError(
                "Validation failed",
                details=[{"field": "bins", "message": f"Bins must be between 1 and {self.MAX_WAVEFORM_BINS}"}]
            )

        recording = self.resolve_file(recording_id)
        audio = self._load_audio(recording)
        peaks = compute_peaks(audio, bins)

        return {
            "recordingId": recording.id,
            "sampleRate": audio.sample_rate,
            "channels": audio.channels,
            "duration": audio.duration,
            "durationLabel": format_time(audio.duration),
            "bins": len(peaks),
            "peaks": [[lo, hi] for lo, hi in peaks],
            "trimStart": recording.trim_start,
            "trimEnd": recording.trim_end,
        }

    def trim_recording(self, recording_id: int, start: float, end: float) -> Recording:
        """
        録音をトリミングして WAV として保存し直す

        終了位置が音声の長さを超える場合は長さに丸めます。
        元のファイルは新しい WAV に置き換えられます。
        """
        recording = self.resolve_file(recording_id)
        audio = self._load_audio(recording)

        if start >= audio.duration:
            raise ValidationError(
                "Validation failed",
                details=[{"field": "trimStart", "message": "Trim start must be within the recording duration"}]
            )
        end = min(end, audio.duration)

        trimmed = trim(audio, start, end)
        data = encode_wav(trimmed)

        file_name = generate_unique_filename(f"{Path(recording.file_name).stem}.wav", "audio/wav")
        file_path = os.path.join(self.upload_dir, file_name)
        with open(file_path, "wb") as f:
            f.write(data)

        updated = replace(
            recording,
            file_name=file_name,
            file_path=file_path,
            file_size=len(data),
            mime_type="audio/wav",
            duration=trimmed.duration,
            trim_start=start,
            trim_end=end,
            updated_at=utcnow(),
        )
        try:
            self.storage.update_recording(updated)
        except StorageError:
            self._remove_file(file_path)
            raise

        if recording.file_path != file_path:
            self._remove_file(recording.file_path)

        self.logger.info(
            "recording_trimmed",
            recording_id=recording_id,
            trim_start=start,
            trim_end=end,
            frames=trimmed.frames,
            sample_rate=trimmed.sample_rate
        )
        return updated

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _is_wav(self, path: str, mime_type: str) -> bool:
        return base_mime_type(mime_type) in WAV_MIME_TYPES or Path(path).suffix.lower() == ".wav"

    def _load_audio(self, recording: Recording) -> PCMAudio:
        """録音を PCM としてデコード。WAV 以外は ffmpeg で一時 WAV に変換する"""
        if self._is_wav(recording.file_path, recording.mime_type):
            return read_wav_file(recording.file_path)

        wav_path = self.converter.convert_to_wav(recording.file_path)
        try:
            return read_wav_file(wav_path)
        finally:
            if wav_path != recording.file_path:
                self._remove_file(wav_path)

    def _detect_duration(self, file_path: str, mime_type: str) -> Optional[float]:
        """再生時間を WAV ヘッダーまたは ffprobe から取得"""
        if self._is_wav(file_path, mime_type):
            try:
                with open(file_path, "rb") as f:
                    return decode_wav(f.read()).duration
            except AudioProcessingError:
                self.logger.warning("recording_wav_header_unreadable", file_path=file_path)
                return None
        return self.converter.probe_duration(file_path)

    def _remove_file(self, path: Optional[str]) -> None:
        if not path:
            return
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self.logger.warning("recording_file_remove_failed", path=path, error=str(e))
