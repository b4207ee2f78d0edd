"""
例外モジュール (Errors Module)

API レスポンスの HTTP ステータスに対応するアプリケーション例外を定義します。
"""

from typing import Any, Optional


class VoiceBlastError(Exception):
    """
    アプリケーション例外の基底クラス

    Attributes:
        message: エラーメッセージ
        error_type: エラーの種類（レスポンスの "error" フィールド）
        status_code: HTTP ステータスコード
        details: 追加の詳細情報
    """

    status_code = 500
    error_type = "internal_error"

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Any] = None
    ):
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class ValidationError(VoiceBlastError):
    """リクエスト検証エラー"""

    status_code = 400
    error_type = "validation_error"


class NotFoundError(VoiceBlastError):
    """対象リソースが存在しない"""

    status_code = 404
    error_type = "not_found"


class ConflictError(VoiceBlastError):
    """
    状態競合エラー

    実行中キャンペーンの削除や録音名の重複など、
    現在の状態では受け付けられない操作で発生します。
    """

    status_code = 409
    error_type = "conflict"


class AudioProcessingError(VoiceBlastError):
    """音声の変換・デコード・トリミングに失敗した場合に発生"""

    status_code = 422
    error_type = "audio_processing_error"


class VoiceBroadcastAPIError(VoiceBlastError):
    """
    音声一斉配信 API エラー

    外部 API の HTTP エラーや通信エラーを表します。
    details には外部 API のレスポンス本文をそのまま保持します。

    Attributes:
        upstream_status: 外部 API が返した HTTP ステータス（通信エラー時は None）
    """

    status_code = 502
    error_type = "voice_broadcast_api_error"

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        details: Optional[Any] = None
    ):
        super().__init__(message, details=details)
        self.upstream_status = upstream_status
