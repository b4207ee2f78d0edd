"""
キャンペーンマネージャーモジュール (Campaign Manager Module)

一斉発信キャンペーンの作成・更新・削除と、外部の音声一斉配信 API を
使った実行、キャンセル、統計、ステータス Webhook の反映を担当します。

ステータスは pending (または scheduled) -> in_progress ->
completed / failed / cancelled の順に遷移します。
"""

import math
import os
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .audio_converter import AudioConverter
from .broadcast_client import VoiceBroadcastClient
from .errors import (
    AudioProcessingError,
    ConflictError,
    NotFoundError,
    ValidationError,
    VoiceBlastError,
    VoiceBroadcastAPIError,
)
from .log import get_logger
from .models import (
    CALL_STATUS_CANCELLED,
    CALL_STATUS_COMPLETED,
    CALL_STATUS_FAILED,
    CALL_STATUS_IN_PROGRESS,
    CALL_STATUS_PENDING,
    CALL_STATUS_SCHEDULED,
    CALL_STATUSES,
    TERMINAL_CALL_STATUSES,
    Call,
    CallResult,
    Recording,
    utcnow,
)
from .storage import Storage
from .validation import (
    format_dispatch_number,
    normalize_phone_number,
    parse_datetime,
    validate_call_creation,
    validate_call_result_status,
    validate_call_update,
    validate_pagination,
)


# 外部 API が返す可能性のあるステータス表記
WEBHOOK_STATUS_ALIASES = {
    "running": CALL_STATUS_IN_PROGRESS,
    "executing": CALL_STATUS_IN_PROGRESS,
    "canceled": CALL_STATUS_CANCELLED,
}

SUCCESS_RESULT_STATUSES = ("completed", "connected")
FAILED_RESULT_STATUSES = ("failed", "busy", "no_answer", "invalid")

CANCELLABLE_STATUSES = (CALL_STATUS_PENDING, CALL_STATUS_SCHEDULED, CALL_STATUS_IN_PROGRESS)


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


class CampaignManager:
    """
    キャンペーンを管理するクラス

    Attributes:
        storage: ストレージレイヤー
        client: 音声一斉配信 API クライアント
        converter: WAV 変換
        default_caller_id: キャンペーンに発信者番号がない場合の既定値
        dial_prefix: 国内番号に付与する国番号
    """

    def __init__(
        self,
        storage: Storage,
        client: VoiceBroadcastClient,
        converter: Optional[AudioConverter] = None,
        default_caller_id: Optional[str] = None,
        dial_prefix: str = "88"
    ):
        self.storage = storage
        self.client = client
        self.converter = converter or AudioConverter()
        self.default_caller_id = default_caller_id
        self.dial_prefix = dial_prefix
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # 取得
    # ------------------------------------------------------------------

    def get(self, call_id: int) -> Call:
        """ID でキャンペーンを取得。存在しない場合は NotFoundError"""
        call = self.storage.get_call(call_id)
        if call is None:
            raise NotFoundError("Call not found")
        return call

    def list_calls(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        """
        キャンペーン一覧を取得

        Args:
            args: page, limit, status クエリ

        Returns:
            calls（録音付き）と pagination を含む辞書
        """
        page, limit, status = validate_pagination(args)
        calls, total = self.storage.list_calls(page=page, limit=limit, status=status)

        recordings: Dict[int, Optional[Recording]] = {}
        items = []
        for call in calls:
            if call.recording_id not in recordings:
                recordings[call.recording_id] = self.storage.get_recording(call.recording_id)
            items.append(call.to_dict(recordings[call.recording_id]))

        return {
            "calls": items,
            "pagination": {
                "currentPage": page,
                "totalPages": math.ceil(total / limit) if total else 0,
                "totalItems": total,
                "itemsPerPage": limit,
            },
        }

    def get_details(self, call_id: int) -> Dict[str, Any]:
        """
        キャンペーン詳細を取得

        実行済み（Blast ID あり）の場合は外部 API から配信レポートを取得します。
        レポート取得の失敗は apiError として返し、リクエスト自体は失敗させません。
        """
        call = self.get(call_id)
        recording = self.storage.get_recording(call.recording_id)
        data: Dict[str, Any] = {
            "call": call.to_dict(recording),
            "results": [r.to_dict() for r in self.storage.list_call_results(call_id)],
        }

        if call.blast_id:
            try:
                data["apiResponse"] = self.client.get_report(call.blast_id)
            except VoiceBroadcastAPIError as e:
                self.logger.warning(
                    "campaign_report_fetch_failed",
                    call_id=call_id,
                    blast_id=call.blast_id,
                    error_message=e.message,
                    details=e.details
                )
                data["apiError"] = "Failed to fetch campaign report from API"
        else:
            data["note"] = "Campaign not executed yet - no blast_id available"

        return data

    # ------------------------------------------------------------------
    # 作成・更新・削除
    # ------------------------------------------------------------------

    def create(self, data: Mapping[str, Any]) -> Tuple[Call, Dict[str, Any]]:
        """
        キャンペーンを作成

        電話番号は正規化して有効・無効に分け、有効な番号のみ保存します。
        scheduledAt が指定された場合は scheduled ステータスで作成します。

        Returns:
            (作成したキャンペーン, 有効・無効番号の集計)

        Raises:
            ValidationError: 入力が不正、または録音が存在しない場合
        """
        values = validate_call_creation(data)

        if self.storage.get_recording(values["recording_id"]) is None:
            raise ValidationError(
                "Recording not found",
                details=[{"field": "recordingId", "message": "Recording not found"}]
            )

        now = utcnow()
        call = self.storage.create_call(Call(
            id=None,
            title=values["title"],
            description=values["description"],
            recording_id=values["recording_id"],
            phone_numbers=values["phone_numbers"],
            caller_id=values["caller_id"],
            retry=values["retry"],
            status=CALL_STATUS_SCHEDULED if values["scheduled_at"] else CALL_STATUS_PENDING,
            scheduled_at=values["scheduled_at"],
            started_at=None,
            completed_at=None,
            total_calls=len(values["phone_numbers"]),
            successful_calls=0,
            failed_calls=0,
            blast_id=None,
            api_response=None,
            error_message=None,
            invalid_numbers=values["invalid_numbers"],
            created_at=now,
            updated_at=now,
        ))

        summary = {
            "validNumbersCount": len(values["phone_numbers"]),
            "invalidNumbersCount": len(values["invalid_numbers"]),
        }
        if values["invalid_numbers"]:
            summary["invalidNumbers"] = values["invalid_numbers"]

        self.logger.info(
            "campaign_created",
            call_id=call.id,
            recording_id=call.recording_id,
            valid_numbers=summary["validNumbersCount"],
            invalid_numbers=summary["invalidNumbersCount"],
            status=call.status
        )
        return call, summary

    def update(self, call_id: int, data: Mapping[str, Any]) -> Call:
        """
        キャンペーンを更新

        実行中のキャンペーンはキャンセル（status=cancelled）以外の更新を受け付けません。
        """
        call = self.get(call_id)
        updates = validate_call_update(data)

        if call.status == CALL_STATUS_IN_PROGRESS and updates.get("status") != CALL_STATUS_CANCELLED:
            raise ConflictError("Cannot update call in progress")

        if "phone_numbers" in updates:
            updates["total_calls"] = len(updates["phone_numbers"])

        # 予約日時の変更に合わせて pending / scheduled を切り替える
        if "status" not in updates and "scheduled_at" in updates:
            if updates["scheduled_at"] and call.status == CALL_STATUS_PENDING:
                updates["status"] = CALL_STATUS_SCHEDULED
            elif not updates["scheduled_at"] and call.status == CALL_STATUS_SCHEDULED:
                updates["status"] = CALL_STATUS_PENDING

        now = utcnow()
        if updates.get("status") in TERMINAL_CALL_STATUSES and call.completed_at is None:
            updates["completed_at"] = now

        updated = replace(call, updated_at=now, **updates)
        self.storage.update_call(updated)

        self.logger.info("campaign_updated", call_id=call_id, fields=sorted(updates))
        return updated

    def delete(self, call_id: int) -> None:
        """キャンペーンを削除。実行中は削除できない"""
        call = self.get(call_id)
        if call.status == CALL_STATUS_IN_PROGRESS:
            raise ConflictError("Cannot delete call in progress. Cancel it first.")
        self.storage.delete_call(call_id)
        self.logger.info("campaign_deleted", call_id=call_id)

    # ------------------------------------------------------------------
    # 実行・キャンセル
    # ------------------------------------------------------------------

    def execute(self, call_id: int) -> Tuple[Call, Dict[str, Any]]:
        """
        キャンペーンを実行

        録音を 8kHz モノラル WAV に変換し、外部 API へ登録します。
        成功時は completed とし Blast ID と集計値を保存します。
        失敗時は failed とし、例外（外部 API のエラー内容を含む）を再送出します。

        Returns:
            (更新後のキャンペーン, 配信結果)

        Raises:
            NotFoundError: キャンペーンが存在しない場合
            ConflictError: 実行中または完了済みの場合
            ValidationError: 録音が存在しない場合
            AudioProcessingError: 音声変換に失敗した場合
            VoiceBroadcastAPIError: 外部 API がエラーを返した場合
        """
        call = self.get(call_id)

        if call.status == CALL_STATUS_IN_PROGRESS:
            raise ConflictError("Call is already in progress")
        if call.status == CALL_STATUS_COMPLETED:
            raise ConflictError("Call has already been completed")

        recording = self.storage.get_recording(call.recording_id)
        if recording is None:
            raise ValidationError("Recording not found for this call", error_type="missing_recording")

        call = replace(
            call,
            status=CALL_STATUS_IN_PROGRESS,
            started_at=utcnow(),
            completed_at=None,
            error_message=None,
            updated_at=utcnow(),
        )
        self.storage.update_call(call)

        phone_numbers = [format_dispatch_number(n, self.dial_prefix) for n in call.phone_numbers]
        caller_id = call.caller_id or self.default_caller_id
        retry = call.retry

        self.logger.info(
            "campaign_execution_started",
            call_id=call_id,
            recording_id=recording.id,
            phone_count=len(phone_numbers),
            caller_id=caller_id,
            retry=retry
        )

        wav_path = None
        try:
            wav_path = self.converter.convert_to_wav(recording.file_path)
            submission = self.client.create_campaign(
                phone_numbers=phone_numbers,
                audio_path=wav_path,
                caller_id=caller_id,
                retry=retry
            )
        except (AudioProcessingError, VoiceBroadcastAPIError) as e:
            api_response = e.details if isinstance(e, VoiceBroadcastAPIError) else call.api_response
            self._mark_failed(call, e.message, api_response)
            self.logger.error(
                "campaign_execution_failed",
                call_id=call_id,
                error_type=e.error_type,
                error_message=e.message,
                details=e.details,
                exc_info=True
            )
            raise
        except Exception as e:
            self._mark_failed(call, str(e) or type(e).__name__, call.api_response)
            self.logger.error(
                "campaign_execution_failed",
                call_id=call_id,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True
            )
            raise
        finally:
            if wav_path and wav_path != recording.file_path and os.path.exists(wav_path):
                try:
                    os.remove(wav_path)
                except OSError as cleanup_error:
                    self.logger.warning(
                        "temporary_wav_cleanup_failed",
                        path=wav_path,
                        error=str(cleanup_error)
                    )

        completed = replace(
            call,
            status=CALL_STATUS_COMPLETED,
            completed_at=utcnow(),
            total_calls=len(phone_numbers),
            successful_calls=len(phone_numbers),
            failed_calls=0,
            blast_id=submission.blast_id,
            api_response=submission.api_response,
            updated_at=utcnow(),
        )
        self.storage.update_call(completed)

        self.logger.info(
            "campaign_executed",
            call_id=call_id,
            blast_id=submission.blast_id,
            phone_count=len(phone_numbers)
        )

        broadcast_result = {
            "success": True,
            "blastId": submission.blast_id,
            "status": "created",
            "successCount": len(phone_numbers),
            "failedCount": 0,
            "apiResponse": submission.api_response,
            "details": {
                "phoneNumbers": phone_numbers,
                "callerId": caller_id,
                "retry": retry,
                "audioFormat": "wav",
            },
        }
        return completed, broadcast_result

    def _mark_failed(self, call: Call, error_message: str, api_response: Any) -> Call:
        """実行失敗を記録（status=failed, completed_at, error_message）"""
        failed = replace(
            call,
            status=CALL_STATUS_FAILED,
            completed_at=utcnow(),
            error_message=error_message,
            api_response=api_response,
            updated_at=utcnow(),
        )
        self.storage.update_call(failed)
        return failed

    def cancel(self, call_id: int) -> Call:
        """
        キャンペーンをキャンセル

        外部 API は実行中キャンペーンの停止に対応していないため、
        ステータスの更新のみを行います。
        """
        call = self.get(call_id)
        if call.status not in CANCELLABLE_STATUSES:
            raise ConflictError(f"Call cannot be cancelled in status '{call.status}'")

        if call.blast_id:
            self.logger.warning(
                "campaign_cancel_not_propagated",
                call_id=call_id,
                blast_id=call.blast_id
            )

        now = utcnow()
        cancelled = replace(call, status=CALL_STATUS_CANCELLED, completed_at=now, updated_at=now)
        self.storage.update_call(cancelled)
        self.logger.info("campaign_cancelled", call_id=call_id, previous_status=call.status)
        return cancelled

    def run_due_scheduled(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        予約日時を過ぎたキャンペーンを実行

        個々のキャンペーンの失敗は記録して次に進みます。

        Returns:
            callId, status, error を含む実行結果のリスト
        """
        now = now or utcnow()
        outcomes = []
        for call in self.storage.list_due_scheduled_calls(now):
            try:
                executed, _ = self.execute(call.id)
                outcomes.append({"callId": call.id, "status": executed.status, "error": None})
            except VoiceBlastError as e:
                self.logger.error(
                    "scheduled_campaign_failed",
                    call_id=call.id,
                    error_type=e.error_type,
                    error_message=e.message
                )
                outcomes.append({"callId": call.id, "status": CALL_STATUS_FAILED, "error": e.message})
        return outcomes

    # ------------------------------------------------------------------
    # 統計・Webhook
    # ------------------------------------------------------------------

    def stats(self, call_id: int) -> Dict[str, Any]:
        """キャンペーンの集計値を取得"""
        call = self.get(call_id)
        total = call.total_calls
        duration = None
        if call.started_at and call.completed_at:
            duration = round((call.completed_at - call.started_at).total_seconds())

        return {
            "title": call.title,
            "status": call.status,
            "totalCalls": total,
            "successfulCalls": call.successful_calls,
            "failedCalls": call.failed_calls,
            "successRate": round(call.successful_calls / total * 100, 2) if total > 0 else 0,
            "createdAt": call.created_at.isoformat() if call.created_at else None,
            "startedAt": call.started_at.isoformat() if call.started_at else None,
            "completedAt": call.completed_at.isoformat() if call.completed_at else None,
            "duration": duration,
        }

    def handle_webhook(self, data: Mapping[str, Any]) -> Call:
        """
        外部 API からのステータス通知を反映

        Args:
            data: campaignId（Blast ID）, status, results を含む通知内容
                results は successCount, failedCount と、電話番号ごとの
                結果リスト calls を持つことができます。

        Returns:
            更新後のキャンペーン

        Raises:
            ValidationError: campaignId がない、または status が不正な場合
            NotFoundError: 該当するキャンペーンがない場合
        """
        campaign_id = data.get("campaignId")
        if campaign_id is None or str(campaign_id).strip() == "":
            raise ValidationError("Campaign ID is required")

        status = data.get("status")
        if status is not None:
            if not isinstance(status, str):
                raise ValidationError(
                    "Validation failed",
                    details=[{"field": "status", "message": "Invalid status"}]
                )
            status = WEBHOOK_STATUS_ALIASES.get(status, status)
            if status not in CALL_STATUSES:
                raise ValidationError(
                    "Validation failed",
                    details=[{"field": "status", "message": "Invalid status"}]
                )

        call = self.storage.get_call_by_blast_id(str(campaign_id))
        if call is None:
            raise NotFoundError("Call not found for campaign ID")

        now = utcnow()
        updates: Dict[str, Any] = {"updated_at": now}
        if status:
            updates["status"] = status
            if status in (CALL_STATUS_COMPLETED, CALL_STATUS_FAILED):
                updates["completed_at"] = now

        results = data.get("results")
        if isinstance(results, Mapping):
            saved = self._save_call_results(call, results.get("calls") or [])
            success_count = _optional_int(results.get("successCount"))
            failed_count = _optional_int(results.get("failedCount"))
            if success_count is None and saved:
                success_count = sum(1 for r in saved if r.status in SUCCESS_RESULT_STATUSES)
            if failed_count is None and saved:
                failed_count = sum(1 for r in saved if r.status in FAILED_RESULT_STATUSES)
            updates["successful_calls"] = success_count or 0
            updates["failed_calls"] = failed_count or 0

        updated = replace(call, **updates)
        self.storage.update_call(updated)

        self.logger.info(
            "campaign_webhook_applied",
            call_id=call.id,
            blast_id=call.blast_id,
            status=updated.status,
            successful_calls=updated.successful_calls,
            failed_calls=updated.failed_calls
        )
        return updated

    def _save_call_results(self, call: Call, entries: List[Any]) -> List[CallResult]:
        saved = []
        now = utcnow()
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            phone_number = normalize_phone_number(entry.get("phoneNumber"))
            if not phone_number:
                continue
            saved.append(self.storage.save_call_result(CallResult(
                id=None,
                call_id=call.id,
                phone_number=phone_number,
                status=validate_call_result_status(entry.get("status")),
                duration=_optional_int(entry.get("duration")),
                start_time=parse_datetime(entry.get("startTime")),
                end_time=parse_datetime(entry.get("endTime")),
                call_sid=entry.get("callSid"),
                error_message=entry.get("errorMessage"),
                api_response=dict(entry),
                cost=_optional_float(entry.get("cost")),
                retry_count=_optional_int(entry.get("retryCount")) or 0,
                created_at=now,
                updated_at=now,
            )))
        return saved
