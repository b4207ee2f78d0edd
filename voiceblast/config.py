"""
設定管理モジュール (Configuration Management Module)

環境変数からアプリケーション設定を読み込み、検証を行います。
"""

from dataclasses import dataclass, field
from typing import List, Optional
import os


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


@dataclass
class Config:
    """
    アプリケーション設定

    環境変数から設定を読み込み、必須設定のバリデーションを行います。
    """
    # 音声一斉配信 API 認証情報 (必須)
    broadcast_base_url: str
    broadcast_api_user: str
    broadcast_api_pass: str

    # 音声一斉配信 API エンドポイント
    broadcast_blast_url: str
    broadcast_report_url: str
    broadcast_timeout: int

    # 発信設定
    default_caller_id: Optional[str]
    dial_prefix: str

    # ストレージ設定
    database_path: str
    upload_dir: str
    max_upload_size_mb: int
    allowed_mime_types: List[str]

    # 外部ツール
    ffmpeg_path: str
    ffprobe_path: str

    # Web 設定
    cors_origin: str

    # ロギング設定
    log_level: str

    DEFAULT_BROADCAST_TIMEOUT: int = field(default=60, init=False, repr=False)
    DEFAULT_DIAL_PREFIX: str = field(default="88", init=False, repr=False)
    DEFAULT_DATABASE_PATH: str = field(default="voiceblast.db", init=False, repr=False)
    DEFAULT_UPLOAD_DIR: str = field(default="uploads", init=False, repr=False)
    DEFAULT_MAX_UPLOAD_SIZE_MB: int = field(default=50, init=False, repr=False)
    DEFAULT_ALLOWED_MIME_TYPES: str = field(
        default="audio/mpeg,audio/wav,audio/x-wav,audio/wave,audio/webm,audio/ogg",
        init=False,
        repr=False
    )
    DEFAULT_CORS_ORIGIN: str = field(default="http://localhost:3000", init=False, repr=False)
    DEFAULT_LOG_LEVEL: str = field(default="INFO", init=False, repr=False)

    @property
    def max_upload_bytes(self) -> int:
        """アップロード上限（バイト）"""
        return self.max_upload_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> 'Config':
        """
        環境変数から設定を読み込む

        必須の環境変数:
            - VOICE_BROADCAST_BASE_URL: 音声一斉配信 API のベース URL
            - VOICE_BROADCAST_API_USER: API ユーザー名
            - VOICE_BROADCAST_API_PASS: API パスワード

        オプションの環境変数:
            - VOICE_BROADCAST_BLAST_URL: 配信エンドポイント (デフォルト: <base>/do_blast)
            - VOICE_BROADCAST_REPORT_URL: レポートエンドポイント (デフォルト: <base>/get_report)
            - VOICE_BROADCAST_TIMEOUT: API タイムアウト秒 (デフォルト: 60)
            - DEFAULT_CALLER_ID: 既定の発信者番号
            - DIAL_PREFIX: 0 始まりの国内番号に付与する国番号 (デフォルト: 88)
            - DATABASE_PATH: SQLite ファイルパス (デフォルト: voiceblast.db)
            - UPLOAD_DIR: 録音ファイル保存先 (デフォルト: uploads)
            - MAX_UPLOAD_SIZE_MB: アップロード上限 MB (デフォルト: 50)
            - ALLOWED_MIME_TYPES: 許可する MIME タイプ（カンマ区切り）
            - FFMPEG_PATH / FFPROBE_PATH: 外部ツールのパス
            - CORS_ORIGIN: クライアントのオリジン (デフォルト: http://localhost:3000)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している、または値が不正な場合
        """
        broadcast_base_url = os.environ.get("VOICE_BROADCAST_BASE_URL", "")
        broadcast_api_user = os.environ.get("VOICE_BROADCAST_API_USER", "")
        broadcast_api_pass = os.environ.get("VOICE_BROADCAST_API_PASS", "")

        blast_url = os.environ.get("VOICE_BROADCAST_BLAST_URL", "")
        report_url = os.environ.get("VOICE_BROADCAST_REPORT_URL", "")

        # ベースURLからエンドポイントを自動生成（個別指定がない場合）
        if broadcast_base_url:
            base = broadcast_base_url.rstrip("/")
            if not blast_url:
                blast_url = f"{base}/do_blast"
            if not report_url:
                report_url = f"{base}/get_report"

        try:
            broadcast_timeout = int(os.environ.get("VOICE_BROADCAST_TIMEOUT", "60"))
            max_upload_size_mb = int(os.environ.get("MAX_UPLOAD_SIZE_MB", "50"))
        except ValueError as e:
            raise ConfigurationError(f"数値設定の形式が不正です: {e}") from e

        mime_types_raw = os.environ.get(
            "ALLOWED_MIME_TYPES",
            "audio/mpeg,audio/wav,audio/x-wav,audio/wave,audio/webm,audio/ogg"
        )
        allowed_mime_types = [m.strip().lower() for m in mime_types_raw.split(",") if m.strip()]

        config = cls(
            broadcast_base_url=broadcast_base_url,
            broadcast_api_user=broadcast_api_user,
            broadcast_api_pass=broadcast_api_pass,
            broadcast_blast_url=blast_url,
            broadcast_report_url=report_url,
            broadcast_timeout=broadcast_timeout,
            default_caller_id=os.environ.get("DEFAULT_CALLER_ID") or None,
            dial_prefix=os.environ.get("DIAL_PREFIX", "88"),
            database_path=os.environ.get("DATABASE_PATH", "voiceblast.db"),
            upload_dir=os.environ.get("UPLOAD_DIR", "uploads"),
            max_upload_size_mb=max_upload_size_mb,
            allowed_mime_types=allowed_mime_types,
            ffmpeg_path=os.environ.get("FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=os.environ.get("FFPROBE_PATH", "ffprobe"),
            cors_origin=os.environ.get("CORS_ORIGIN", "http://localhost:3000"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

        # バリデーション実行
        config.validate()

        return config

    def validate(self) -> None:
        """
        設定の妥当性を検証

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        missing_fields = []

        if not self.broadcast_base_url:
            missing_fields.append("VOICE_BROADCAST_BASE_URL")
        if not self.broadcast_api_user:
            missing_fields.append("VOICE_BROADCAST_API_USER")
        if not self.broadcast_api_pass:
            missing_fields.append("VOICE_BROADCAST_API_PASS")

        if missing_fields:
            error_message = (
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )
            raise ConfigurationError(error_message)

        if self.broadcast_timeout <= 0:
            raise ConfigurationError(
                f"VOICE_BROADCAST_TIMEOUT は正の整数である必要があります: {self.broadcast_timeout}"
            )

        if self.max_upload_size_mb <= 0:
            raise ConfigurationError(
                f"MAX_UPLOAD_SIZE_MB は正の整数である必要があります: {self.max_upload_size_mb}"
            )

        if not self.allowed_mime_types:
            raise ConfigurationError("ALLOWED_MIME_TYPES には少なくとも1つの MIME タイプが必要です")

        if self.dial_prefix and not self.dial_prefix.isdigit():
            raise ConfigurationError(
                f"DIAL_PREFIX は数字のみである必要があります: {self.dial_prefix}"
            )

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )
