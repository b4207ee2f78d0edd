"""
データモデルモジュール (Data Models Module)

録音、キャンペーン（Call）、個別発信結果のデータモデルを定義します。
API レスポンスはクライアントに合わせて camelCase のキーで出力します。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# キャンペーンのステータス
CALL_STATUS_PENDING = "pending"
CALL_STATUS_SCHEDULED = "scheduled"
CALL_STATUS_IN_PROGRESS = "in_progress"
CALL_STATUS_COMPLETED = "completed"
CALL_STATUS_FAILED = "failed"
CALL_STATUS_CANCELLED = "cancelled"

CALL_STATUSES = (
    CALL_STATUS_PENDING,
    CALL_STATUS_SCHEDULED,
    CALL_STATUS_IN_PROGRESS,
    CALL_STATUS_COMPLETED,
    CALL_STATUS_FAILED,
    CALL_STATUS_CANCELLED,
)

TERMINAL_CALL_STATUSES = (
    CALL_STATUS_COMPLETED,
    CALL_STATUS_FAILED,
    CALL_STATUS_CANCELLED,
)

# 個別発信のステータス
CALL_RESULT_STATUSES = (
    "pending",
    "calling",
    "connected",
    "completed",
    "failed",
    "busy",
    "no_answer",
    "invalid",
)


def utcnow() -> datetime:
    """タイムゾーン情報なしの現在 UTC 日時"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Recording:
    """
    録音データモデル

    アップロードされた音声ファイルのメタデータを格納します。

    Attributes:
        id: 主キー
        custom_name: 表示名（一意）
        original_name: アップロード時のファイル名
        file_name: 保存ファイル名（一意）
        file_path: 保存ファイルのパス
        file_size: ファイルサイズ（バイト）
        duration: 再生時間（秒）
        mime_type: MIME タイプ
        trim_start: トリミング開始位置（秒）
        trim_end: トリミング終了位置（秒、None は末尾まで）
        uploaded_at: アップロード日時
        created_at: 作成日時
        updated_at: 更新日時
    """
    id: Optional[int]
    custom_name: str
    original_name: Optional[str]
    file_name: str
    file_path: str
    file_size: int
    duration: Optional[float]
    mime_type: str
    trim_start: float
    trim_end: Optional[float]
    uploaded_at: datetime
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customName": self.custom_name,
            "originalName": self.original_name,
            "fileName": self.file_name,
            "filePath": self.file_path,
            "fileSize": self.file_size,
            "duration": self.duration,
            "mimeType": self.mime_type,
            "trimStart": self.trim_start,
            "trimEnd": self.trim_end,
            "uploadedAt": _iso(self.uploaded_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Call:
    """
    キャンペーン（一斉発信）データモデル

    1つの録音を複数の電話番号へ発信するキャンペーンを表します。

    Attributes:
        id: 主キー
        title: キャンペーン名
        description: 説明
        recording_id: 使用する録音の ID
        phone_numbers: 発信先電話番号（数字のみ）
        caller_id: 発信者番号
        retry: 外部 API に渡すリトライ回数
        status: pending, scheduled, in_progress, completed, failed, cancelled
        scheduled_at: 予約実行日時
        started_at: 実行開始日時
        completed_at: 完了日時
        total_calls: 発信総数
        successful_calls: 成功数
        failed_calls: 失敗数
        blast_id: 外部 API のキャンペーン識別子
        api_response: 外部 API の最終レスポンス
        error_message: 失敗理由
        invalid_numbers: 作成時に除外された番号
        created_at: 作成日時
        updated_at: 更新日時
    """
    id: Optional[int]
    title: str
    description: Optional[str]
    recording_id: int
    phone_numbers: List[str]
    caller_id: Optional[str]
    retry: int
    status: str
    scheduled_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    total_calls: int
    successful_calls: int
    failed_calls: int
    blast_id: Optional[str]
    api_response: Optional[Any]
    error_message: Optional[str]
    invalid_numbers: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self, recording: Optional[Recording] = None) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "recordingId": self.recording_id,
            "phoneNumbers": list(self.phone_numbers),
            "callerId": self.caller_id,
            "retry": self.retry,
            "status": self.status,
            "scheduledAt": _iso(self.scheduled_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "totalCalls": self.total_calls,
            "successfulCalls": self.successful_calls,
            "failedCalls": self.failed_calls,
            "blastId": self.blast_id,
            "apiResponse": self.api_response,
            "errorMessage": self.error_message,
            "invalidNumbers": list(self.invalid_numbers),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if recording is not None:
            data["recording"] = recording.to_dict()
        return data


@dataclass
class CallResult:
    """
    個別発信結果データモデル

    ステータス Webhook で通知された電話番号ごとの結果を格納します。
    """
    id: Optional[int]
    call_id: int
    phone_number: str
    status: str
    duration: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    call_sid: Optional[str] = None
    error_message: Optional[str] = None
    api_response: Optional[Any] = None
    cost: Optional[float] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "callId": self.call_id,
            "phoneNumber": self.phone_number,
            "status": self.status,
            "duration": self.duration,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "callSid": self.call_sid,
            "errorMessage": self.error_message,
            "apiResponse": self.api_response,
            "cost": self.cost,
            "retryCount": self.retry_count,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
