"""
Flask アプリケーションモジュール (Flask Application Module)

録音管理とキャンペーン管理の REST API を提供します。
エラーハンドラー、CORS ヘッダー、構造化ロギング、
予約キャンペーン実行用の CLI コマンドを設定します。
"""

import traceback
from typing import Any, Dict, Optional, Tuple

import click
from flask import Flask, jsonify, request, send_file, Response
from werkzeug.exceptions import HTTPException

from .audio_converter import AudioConverter
from .broadcast_client import VoiceBroadcastClient
from .campaign_manager import CampaignManager
from .config import Config
from .errors import ValidationError, VoiceBlastError, VoiceBroadcastAPIError
from .log import configure_structlog, get_logger
from .models import utcnow
from .recording_manager import RecordingManager
from .storage import SQLiteStorage, StorageError
from .validation import validate_trim_request

__all__ = [
    "configure_structlog",
    "create_app",
    "create_error_response",
    "create_success_response",
    "get_logger",
    "validate_json_request",
]


def validate_json_request(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, Optional[str]]:
    """
    JSON リクエストを検証

    Args:
        data: 検証するデータ
        required_fields: 必須フィールドのリスト（オプション）

    Returns:
        (検証結果, エラーメッセージ) のタプル
    """
    if data is None:
        return False, "Invalid JSON: request body is empty or malformed"

    if not isinstance(data, dict):
        return False, "Invalid JSON: request body must be a JSON object"

    if required_fields:
        missing_fields = [f for f in required_fields if f not in data or data[f] is None]
        if missing_fields:
            return False, f"Missing required fields: {', '.join(missing_fields)}"

    return True, None


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Any] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Args:
        error_type: エラーの種類
        message: エラーメッセージ
        status_code: HTTP ステータスコード
        details: 追加の詳細情報（オプション）

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "success": False,
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def create_success_response(
    data: Any = None,
    message: Optional[str] = None,
    status_code: int = 200,
    **extra: Any
) -> Tuple[Response, int]:
    """
    成功レスポンスを作成

    Args:
        data: レスポンスデータ
        message: メッセージ（オプション）
        status_code: HTTP ステータスコード
        extra: レスポンスに追加するフィールド

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body: Dict[str, Any] = {"success": True}
    if message:
        response_body["message"] = message
    if data is not None:
        response_body["data"] = data
    response_body.update(extra)
    return jsonify(response_body), status_code


def _json_body() -> Dict[str, Any]:
    """リクエストボディを JSON オブジェクトとして取得。空の場合は空の辞書"""
    if not request.get_data(cache=True):
        return {}
    data = request.get_json(force=True, silent=True)
    is_valid, error_message = validate_json_request(data)
    if not is_valid:
        raise ValidationError(error_message, error_type="invalid_json")
    return data


def create_app(config: Optional[Config] = None) -> Flask:
    """
    Flask アプリケーションを作成

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    # 設定を読み込み（テスト時は外部から注入可能）
    if config is None:
        config = Config.from_env()

    app.config["VOICEBLAST_CONFIG"] = config
    app.config["MAX_CONTENT_LENGTH"] = config.max_upload_bytes

    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        broadcast_base_url=config.broadcast_base_url,
        database_path=config.database_path,
        upload_dir=config.upload_dir
    )

    # コンポーネントを初期化
    storage = SQLiteStorage(config.database_path)
    app.config["STORAGE"] = storage

    converter = AudioConverter(ffmpeg_path=config.ffmpeg_path, ffprobe_path=config.ffprobe_path)

    recording_manager = RecordingManager(
        storage=storage,
        upload_dir=config.upload_dir,
        converter=converter,
        allowed_mime_types=config.allowed_mime_types,
        max_upload_bytes=config.max_upload_bytes
    )
    app.config["RECORDING_MANAGER"] = recording_manager

    broadcast_client = VoiceBroadcastClient(
        blast_url=config.broadcast_blast_url,
        report_url=config.broadcast_report_url,
        api_user=config.broadcast_api_user,
        api_pass=config.broadcast_api_pass,
        timeout=config.broadcast_timeout
    )
    app.config["BROADCAST_CLIENT"] = broadcast_client

    campaign_manager = CampaignManager(
        storage=storage,
        client=broadcast_client,
        converter=converter,
        default_caller_id=config.default_caller_id,
        dial_prefix=config.dial_prefix
    )
    app.config["CAMPAIGN_MANAGER"] = campaign_manager

    # ==========================================================================
    # CORS
    # ==========================================================================

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = config.cors_origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization, Range"
        response.headers["Access-Control-Expose-Headers"] = (
            "Content-Range, Accept-Ranges, Content-Length, Content-Disposition"
        )
        return response

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(VoiceBroadcastAPIError)
    def handle_voice_broadcast_api_error(error):
        """
        VoiceBroadcastAPIError エラーハンドラー

        外部 API のレスポンス本文を details としてそのまま返します。
        """
        logger.error(
            "voice_broadcast_api_error",
            error_type=error.error_type,
            error_message=error.message,
            upstream_status=error.upstream_status,
            details=error.details,
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=error.status_code,
            details=error.details
        )

    @app.errorhandler(VoiceBlastError)
    def handle_voiceblast_error(error):
        """アプリケーション例外（検証、未検出、競合、音声処理）を処理"""
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            "request_failed",
            error_type=error.error_type,
            error_message=error.message,
            status_code=error.status_code,
            details=error.details,
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=error.status_code,
            details=error.details
        )

    @app.errorhandler(StorageError)
    def handle_storage_error(error):
        logger.error(
            "storage_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            exc_info=True
        )
        return create_error_response(
            error_type="storage_error",
            message="Database operation failed",
            status_code=500
        )

    @app.errorhandler(400)
    def handle_bad_request(error):
        logger.warning(
            "bad_request_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type="bad_request",
            message=str(error.description) if hasattr(error, "description") else "Bad Request",
            status_code=400
        )

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning("route_not_found", path=request.path, method=request.method)
        return create_error_response(
            error_type="not_found",
            message="Route not found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        logger.warning("method_not_allowed_error", path=request.path, method=request.method)
        return create_error_response(
            error_type="method_not_allowed",
            message=str(error.description) if hasattr(error, "description") else "Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(413)
    def handle_request_entity_too_large(error):
        """アップロード上限を超えたリクエストを処理"""
        logger.warning(
            "file_too_large",
            path=request.path,
            max_upload_size_mb=config.max_upload_size_mb
        )
        return create_error_response(
            error_type="file_too_large",
            message=f"File too large. Maximum size is {config.max_upload_size_mb}MB.",
            status_code=413
        )

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(
            "internal_server_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc()
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal Server Error",
            status_code=500
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        """
        汎用例外ハンドラー

        個別ハンドラーのない HTTP 例外はそのステータスで返し、
        予期しない例外はスタックトレースをログ出力して 500 を返します。
        """
        if isinstance(error, HTTPException):
            return create_error_response(
                error_type=(error.name or "http_error").lower().replace(" ", "_"),
                message=error.description or error.name,
                status_code=error.code or 500
            )

        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=500
        )

    # ==========================================================================
    # エンドポイント (Endpoints)
    # ==========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        """
        ヘルスチェックエンドポイント

        Returns:
            JSON レスポンス: {"status": "healthy", ...}
        """
        logger.debug("health_check_requested")
        return jsonify({
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "ffmpegAvailable": converter.is_available()
        }), 200

    @app.route("/api", methods=["GET"])
    def api_index():
        return jsonify({
            "name": "VoiceBlast API",
            "endpoints": {
                "recordings": "/api/recordings",
                "calls": "/api/calls",
                "webhook": "/api/calls/webhook",
                "health": "/health",
            },
        }), 200

    # --------------------------------------------------------------------------
    # 録音 (Recordings)
    # --------------------------------------------------------------------------

    @app.route("/api/recordings", methods=["GET"])
    def list_recordings():
        recordings = recording_manager.list_recordings()
        return create_success_response(
            data=[r.to_dict() for r in recordings],
            count=len(recordings)
        )

    @app.route("/api/recordings", methods=["POST"])
    @app.route("/api/recordings/upload", methods=["POST"])
    def upload_recording():
        """
        録音アップロードエンドポイント

        Form Data (multipart/form-data):
            - audio: 音声ファイル
            - customName: 表示名
            - duration: 再生時間（秒、オプション）
            - trimStart / trimEnd: トリミング範囲（秒、オプション）
        """
        logger.debug(
            "recording_upload_received",
            content_type=request.content_type,
            content_length=request.content_length
        )
        recording = recording_manager.upload(request.files.get("audio"), request.form)
        return create_success_response(
            data=recording.to_dict(),
            message="Recording uploaded successfully",
            status_code=201
        )

    @app.route("/api/recordings/<int:recording_id>", methods=["GET"])
    def get_recording(recording_id: int):
        return create_success_response(data=recording_manager.get(recording_id).to_dict())

    @app.route("/api/recordings/<int:recording_id>", methods=["PUT"])
    def update_recording(recording_id: int):
        recording = recording_manager.update(recording_id, _json_body())
        return create_success_response(
            data=recording.to_dict(),
            message="Recording updated successfully"
        )

    @app.route("/api/recordings/<int:recording_id>", methods=["DELETE"])
    def delete_recording(recording_id: int):
        recording_manager.delete(recording_id)
        return create_success_response(message="Recording deleted successfully")

    @app.route("/api/recordings/<int:recording_id>/download", methods=["GET"])
    def download_recording(recording_id: int):
        recording = recording_manager.resolve_file(recording_id)
        logger.info("recording_download", recording_id=recording_id)
        return send_file(
            recording.file_path,
            mimetype=recording.mime_type,
            as_attachment=True,
            download_name=RecordingManager.download_name(recording)
        )

    @app.route("/api/recordings/<int:recording_id>/stream", methods=["GET"])
    def stream_recording(recording_id: int):
        """Range リクエストに対しては 206 Partial Content を返す"""
        recording = recording_manager.resolve_file(recording_id)
        response = send_file(
            recording.file_path,
            mimetype=recording.mime_type,
            conditional=True
        )
        response.headers["Accept-Ranges"] = "bytes"
        return response

    @app.route("/api/recordings/<int:recording_id>/waveform", methods=["GET"])
    def recording_waveform(recording_id: int):
        bins_arg = request.args.get("bins")
        bins = None
        if bins_arg:
            try:
                bins = int(bins_arg)
            except ValueError:
                raise ValidationError(
                    "Validation failed",
                    details=[{"field": "bins", "message": "Bins must be an integer"}]
                )
        return create_success_response(data=recording_manager.waveform(recording_id, bins))

    @app.route("/api/recordings/<int:recording_id>/trim", methods=["POST"])
    def trim_recording(recording_id: int):
        start, end = validate_trim_request(_json_body())
        recording = recording_manager.trim_recording(recording_id, start, end)
        return create_success_response(
            data=recording.to_dict(),
            message="Recording trimmed successfully"
        )

    # --------------------------------------------------------------------------
    # キャンペーン (Calls)
    # --------------------------------------------------------------------------

    @app.route("/api/calls", methods=["GET"])
    def list_calls():
        result = campaign_manager.list_calls(request.args)
        return create_success_response(data=result["calls"], pagination=result["pagination"])

    @app.route("/api/calls", methods=["POST"])
    def create_call():
        call, summary = campaign_manager.create(_json_body())
        recording = storage.get_recording(call.recording_id)
        return create_success_response(
            data=call.to_dict(recording),
            message="Call campaign created successfully",
            status_code=201,
            summary=summary
        )

    @app.route("/api/calls/webhook", methods=["POST"])
    def call_status_webhook():
        """
        ステータス Webhook エンドポイント

        Request Body (JSON):
            - campaignId: Blast ID
            - status: キャンペーンステータス
            - results: successCount, failedCount, calls
        """
        data = _json_body()
        logger.debug("call_webhook_received", data=data)
        call = campaign_manager.handle_webhook(data)
        return create_success_response(
            data=call.to_dict(),
            message="Webhook processed successfully"
        )

    @app.route("/api/calls/<int:call_id>", methods=["GET"])
    def get_call(call_id: int):
        return create_success_response(data=campaign_manager.get_details(call_id))

    @app.route("/api/calls/<int:call_id>", methods=["PUT"])
    def update_call(call_id: int):
        call = campaign_manager.update(call_id, _json_body())
        return create_success_response(
            data=call.to_dict(storage.get_recording(call.recording_id)),
            message="Call campaign updated successfully"
        )

    @app.route("/api/calls/<int:call_id>", methods=["DELETE"])
    def delete_call(call_id: int):
        campaign_manager.delete(call_id)
        return create_success_response(message="Call campaign deleted successfully")

    @app.route("/api/calls/<int:call_id>/execute", methods=["POST"])
    def execute_call(call_id: int):
        call, broadcast_result = campaign_manager.execute(call_id)
        return create_success_response(
            data={"call": call.to_dict(), "broadcastResult": broadcast_result},
            message="Call campaign executed successfully"
        )

    @app.route("/api/calls/<int:call_id>/cancel", methods=["POST"])
    def cancel_call(call_id: int):
        call = campaign_manager.cancel(call_id)
        return create_success_response(
            data=call.to_dict(),
            message="Call campaign cancelled successfully"
        )

    @app.route("/api/calls/<int:call_id>/stats", methods=["GET"])
    def call_stats(call_id: int):
        return create_success_response(data=campaign_manager.stats(call_id))

    # ==========================================================================
    # CLI
    # ==========================================================================

    @app.cli.command("run-scheduled")
    def run_scheduled_command():
        """予約日時を過ぎたキャンペーンを実行する"""
        outcomes = campaign_manager.run_due_scheduled()
        for outcome in outcomes:
            line = f"call {outcome['callId']}: {outcome['status']}"
            if outcome["error"]:
                line += f" ({outcome['error']})"
            click.echo(line)
        click.echo(f"{len(outcomes)} scheduled campaign(s) processed")

    logger.info("application_ready", endpoints=sorted(str(rule) for rule in app.url_map.iter_rules()))

    return app
