"""
CampaignManager のユニットテスト

音声一斉配信 API クライアントと音声変換はモックに置き換えます。
"""

import os
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from voiceblast.audio_converter import AudioConverter
from voiceblast.broadcast_client import CampaignSubmission, VoiceBroadcastClient
from voiceblast.campaign_manager import CampaignManager
from voiceblast.errors import (
    AudioProcessingError,
    ConflictError,
    NotFoundError,
    ValidationError,
    VoiceBroadcastAPIError,
)
from voiceblast.models import Recording


@pytest.fixture
def recording(storage, tmp_path, make_wav):
    path = tmp_path / "greeting.wav"
    path.write_bytes(make_wav())
    now = datetime(2024, 1, 1)
    return storage.create_recording(Recording(
        id=None,
        custom_name="greeting",
        original_name="greeting.wav",
        file_name="greeting.wav",
        file_path=str(path),
        file_size=path.stat().st_size,
        duration=1.0,
        mime_type="audio/wav",
        trim_start=0.0,
        trim_end=None,
        uploaded_at=now,
        created_at=now,
        updated_at=now,
    ))


@pytest.fixture
def client():
    client = Mock(spec=VoiceBroadcastClient)
    client.create_campaign.return_value = CampaignSubmission(
        blast_id="B-100",
        api_response={"blast_id": "B-100", "status": "ok"}
    )
    return client


@pytest.fixture
def converter(recording):
    converter = Mock(spec=AudioConverter)
    converter.convert_to_wav.return_value = recording.file_path
    return converter


@pytest.fixture
def manager(storage, client, converter):
    return CampaignManager(
        storage=storage,
        client=client,
        converter=converter,
        default_caller_id="09610000000",
        dial_prefix="88"
    )


@pytest.fixture
def payload(recording):
    return {
        "title": "お知らせ",
        "description": "定期連絡",
        "recordingId": recording.id,
        "phoneNumbers": ["017-1234-5678", "8801812345678", "123"],
        "retry": 2,
    }


def set_status(storage, call_id, status, **fields):
    call = storage.get_call(call_id)
    storage.update_call(replace(call, status=status, **fields))


class TestCreate:
    """create() のテスト"""

    def test_create_pending_campaign(self, manager, payload):
        call, summary = manager.create(payload)

        assert call.id is not None
        assert call.status == "pending"
        assert call.phone_numbers == ["01712345678", "8801812345678"]
        assert call.invalid_numbers == ["123"]
        assert call.total_calls == 2
        assert call.retry == 2
        assert summary == {"validNumbersCount": 2, "invalidNumbersCount": 1, "invalidNumbers": ["123"]}

    def test_create_scheduled_campaign(self, manager, payload):
        call, _ = manager.create({**payload, "scheduledAt": "2030-01-01T09:00:00Z"})

        assert call.status == "scheduled"
        assert call.scheduled_at == datetime(2030, 1, 1, 9, 0, 0)

    def test_create_with_unknown_recording(self, manager, payload):
        with pytest.raises(ValidationError, match="Recording not found"):
            manager.create({**payload, "recordingId": 999})


class TestListAndDetails:
    """list_calls() / get_details() のテスト"""

    def test_list_pagination(self, manager, payload):
        for i in range(3):
            manager.create({**payload, "title": f"c{i}"})

        result = manager.list_calls({"page": "1", "limit": "2"})

        assert len(result["calls"]) == 2
        assert result["calls"][0]["recording"]["customName"] == "greeting"
        assert result["pagination"] == {
            "currentPage": 1,
            "totalPages": 2,
            "totalItems": 3,
            "itemsPerPage": 2,
        }

    def test_list_empty(self, manager):
        assert manager.list_calls({})["pagination"]["totalPages"] == 0

    def test_details_before_execution(self, manager, payload, client):
        call, _ = manager.create(payload)

        details = manager.get_details(call.id)

        assert details["call"]["id"] == call.id
        assert details["results"] == []
        assert "note" in details
        client.get_report.assert_not_called()

    def test_details_with_report(self, manager, payload, storage, client):
        call, _ = manager.create(payload)
        set_status(storage, call.id, "completed", blast_id="B-1")
        client.get_report.return_value = {"delivered": 2}

        details = manager.get_details(call.id)

        client.get_report.assert_called_once_with("B-1")
        assert details["apiResponse"] == {"delivered": 2}

    def test_details_report_failure_is_not_fatal(self, manager, payload, storage, client):
        """レポート取得の失敗は apiError として返す"""
        call, _ = manager.create(payload)
        set_status(storage, call.id, "completed", blast_id="B-1")
        client.get_report.side_effect = VoiceBroadcastAPIError("down", upstream_status=503)

        details = manager.get_details(call.id)

        assert "apiError" in details
        assert details["call"]["blastId"] == "B-1"

    def test_details_not_found(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_details(999)


class TestUpdateAndDelete:
    """update() / delete() のテスト"""

    def test_update_phone_numbers_updates_total(self, manager, payload):
        call, _ = manager.create(payload)

        updated = manager.update(call.id, {"phoneNumbers": ["01712345678", "01912345678", "01512345678"]})

        assert updated.total_calls == 3
        assert updated.invalid_numbers == []

    def test_update_scheduled_at_switches_status(self, manager, payload):
        call, _ = manager.create(payload)

        scheduled = manager.update(call.id, {"scheduledAt": "2030-01-01T00:00:00Z"})
        unscheduled = manager.update(call.id, {"scheduledAt": None})

        assert scheduled.status == "scheduled"
        assert unscheduled.status == "pending"

    def test_update_blocked_while_in_progress(self, manager, payload, storage):
        call, _ = manager.create(payload)
        set_status(storage, call.id, "in_progress")

        with pytest.raises(ConflictError):
            manager.update(call.id, {"title": "changed"})

    def test_cancel_via_update_while_in_progress(self, manager, payload, storage):
        call, _ = manager.create(payload)
        set_status(storage, call.id, "in_progress")

        updated = manager.update(call.id, {"status": "cancelled"})

        assert updated.status == "cancelled"
        assert updated.completed_at is not None

    def test_delete(self, manager, payload):
        call, _ = manager.create(payload)

        manager.delete(call.id)

        with pytest.raises(NotFoundError):
            manager.get(call.id)

    def test_delete_blocked_while_in_progress(self, manager, payload, storage):
        call, _ = manager.create(payload)
        set_status(storage, call.id, "in_progress")

        with pytest.raises(ConflictError):
            manager.delete(call.id)


class TestExecute:
    """execute() のテスト"""

    def test_execute_success(self, manager, payload, client, converter, recording):
        call, _ = manager.create(payload)

        executed, result = manager.execute(call.id)

        converter.convert_to_wav.assert_called_once_with(recording.file_path)
        client.create_campaign.assert_called_once_with(
            phone_numbers=["8801712345678", "8801812345678"],
            audio_path=recording.file_path,
            caller_id="09610000000",
            retry=2
        )
        assert executed.status == "completed"
        assert executed.blast_id == "B-100"
        assert executed.successful_calls == 2
        assert executed.failed_calls == 0
        assert executed.started_at is not None
        assert executed.completed_at is not None
        assert executed.api_response == {"blast_id": "B-100", "status": "ok"}
        assert result["blastId"] == "B-100"
        assert result["details"]["audioFormat"] == "wav"

    def test_execute_uses_campaign_caller_id(self, manager, payload, client):
        call, _ = manager.create({**payload, "callerId": "09620000000"})

        manager.execute(call.id)

        assert client.create_campaign.call_args[1]["caller_id"] == "09620000000"

    def test_execute_not_found(self, manager):
        with pytest.raises(NotFoundError):
            manager.execute(999)

    @pytest.mark.parametrize("status", ["in_progress", "completed"])
    def test_execute_conflicts(self, manager, payload, storage, client, status):
        call, _ = manager.create(payload)
        set_status(storage, call.id, status)

        with pytest.raises(ConflictError):
            manager.execute(call.id)

        client.create_campaign.assert_not_called()

    def test_execute_api_failure_marks_failed(self, manager, payload, storage, client):
        """外部 API のエラーは failed として保存し、例外を再送出する"""
        call, _ = manager.create(payload)
        client.create_campaign.side_effect = VoiceBroadcastAPIError(
            "Invalid caller ID", upstream_status=400, details={"message": "Invalid caller ID"}
        )

        with pytest.raises(VoiceBroadcastAPIError) as exc_info:
            manager.execute(call.id)

        stored = storage.get_call(call.id)
        assert exc_info.value.details == {"message": "Invalid caller ID"}
        assert stored.status == "failed"
        assert stored.error_message == "Invalid caller ID"
        assert stored.api_response == {"message": "Invalid caller ID"}
        assert stored.completed_at is not None

    def test_execute_conversion_failure_marks_failed(self, manager, payload, storage, converter, client):
        call, _ = manager.create(payload)
        converter.convert_to_wav.side_effect = AudioProcessingError("Invalid audio file format")

        with pytest.raises(AudioProcessingError):
            manager.execute(call.id)

        assert storage.get_call(call.id).status == "failed"
        client.create_campaign.assert_not_called()

    def test_execute_unexpected_error_marks_failed(self, manager, payload, storage, converter, client):
        """想定外の例外でも failed と error_message を記録して再送出する"""
        call, _ = manager.create(payload)
        converter.convert_to_wav.side_effect = PermissionError("Permission denied")

        with pytest.raises(PermissionError):
            manager.execute(call.id)

        stored = storage.get_call(call.id)
        assert stored.status == "failed"
        assert stored.error_message == "Permission denied"
        assert stored.completed_at is not None
        client.create_campaign.assert_not_called()

        converter.convert_to_wav.side_effect = None
        executed, _ = manager.execute(call.id)
        assert executed.status == "completed"

    def test_failed_campaign_can_be_retried(self, manager, payload, client):
        call, _ = manager.create(payload)
        client.create_campaign.side_effect = [
            VoiceBroadcastAPIError("temporary", upstream_status=503),
            CampaignSubmission(blast_id="B-2", api_response={}),
        ]

        with pytest.raises(VoiceBroadcastAPIError):
            manager.execute(call.id)
        executed, _ = manager.execute(call.id)

        assert executed.status == "completed"
        assert executed.error_message is None

    def test_converted_file_is_removed(self, manager, payload, converter, tmp_path, make_wav):
        """変換した一時 WAV は送信後に削除する"""
        converted = tmp_path / "greeting_converted.wav"
        converted.write_bytes(make_wav())
        converter.convert_to_wav.return_value = str(converted)
        call, _ = manager.create(payload)

        manager.execute(call.id)

        assert not converted.exists()

    def test_original_wav_is_kept(self, manager, payload, recording):
        call, _ = manager.create(payload)

        manager.execute(call.id)

        assert os.path.exists(recording.file_path)


class TestCancel:
    """cancel() のテスト"""

    @pytest.mark.parametrize("status", ["pending", "scheduled", "in_progress"])
    def test_cancel_allowed(self, manager, payload, storage, status):
        call, _ = manager.create(payload)
        set_status(storage, call.id, status)

        cancelled = manager.cancel(call.id)

        assert cancelled.status == "cancelled"
        assert storage.get_call(call.id).completed_at is not None

    @pytest.mark.parametrize("status", ["completed", "failed", "cancelled"])
    def test_cancel_rejected(self, manager, payload, storage, status):
        call, _ = manager.create(payload)
        set_status(storage, call.id, status)

        with pytest.raises(ConflictError):
            manager.cancel(call.id)


class TestStats:
    """stats() のテスト"""

    def test_stats(self, manager, payload, storage):
        call, _ = manager.create({**payload, "phoneNumbers": ["01712345678", "01812345678", "01912345678"]})
        started = datetime(2024, 1, 1, 10, 0, 0)
        set_status(
            storage, call.id, "completed",
            successful_calls=2, failed_calls=1,
            started_at=started, completed_at=started + timedelta(seconds=95)
        )

        stats = manager.stats(call.id)

        assert stats["totalCalls"] == 3
        assert stats["successfulCalls"] == 2
        assert stats["failedCalls"] == 1
        assert stats["successRate"] == 66.67
        assert stats["duration"] == 95

    def test_stats_before_execution(self, manager, payload):
        call, _ = manager.create(payload)

        stats = manager.stats(call.id)

        assert stats["successRate"] == 0
        assert stats["duration"] is None


class TestWebhook:
    """handle_webhook() のテスト"""

    @pytest.fixture
    def executed(self, manager, payload):
        call, _ = manager.create(payload)
        executed, _ = manager.execute(call.id)
        return executed

    def test_requires_campaign_id(self, manager):
        with pytest.raises(ValidationError, match="Campaign ID is required"):
            manager.handle_webhook({"status": "completed"})

    def test_unknown_campaign(self, manager):
        with pytest.raises(NotFoundError):
            manager.handle_webhook({"campaignId": "nope"})

    def test_invalid_status(self, manager, executed):
        with pytest.raises(ValidationError):
            manager.handle_webhook({"campaignId": executed.blast_id, "status": "exploded"})

    @pytest.mark.parametrize("status", [{"a": 1}, ["completed"], 1])
    def test_non_string_status(self, manager, executed, status):
        with pytest.raises(ValidationError) as exc_info:
            manager.handle_webhook({"campaignId": executed.blast_id, "status": status})

        assert exc_info.value.details == [{"field": "status", "message": "Invalid status"}]
        assert manager.get(executed.id).status == "completed"

    def test_applies_status_and_counters(self, manager, executed):
        updated = manager.handle_webhook({
            "campaignId": executed.blast_id,
            "status": "failed",
            "results": {"successCount": 1, "failedCount": 1},
        })

        assert updated.status == "failed"
        assert updated.successful_calls == 1
        assert updated.failed_calls == 1
        assert updated.completed_at is not None

    def test_running_alias(self, manager, executed):
        assert manager.handle_webhook({"campaignId": "B-100", "status": "running"}).status == "in_progress"

    def test_stores_per_number_results(self, manager, executed, storage):
        """電話番号ごとの結果を保存し、件数がない場合は結果から数える"""
        updated = manager.handle_webhook({
            "campaignId": executed.blast_id,
            "status": "completed",
            "results": {
                "calls": [
                    {"phoneNumber": "8801712345678", "status": "completed", "duration": "31", "cost": "0.5"},
                    {"phoneNumber": "8801812345678", "status": "busy", "errorMessage": "Busy"},
                    {"status": "completed"},
                ]
            },
        })

        results = storage.list_call_results(executed.id)
        assert [r.phone_number for r in results] == ["8801712345678", "8801812345678"]
        assert results[0].duration == 31
        assert results[0].cost == 0.5
        assert results[1].status == "busy"
        assert results[1].error_message == "Busy"
        assert updated.successful_calls == 1
        assert updated.failed_calls == 1


class TestRunDueScheduled:
    """run_due_scheduled() のテスト"""

    def test_executes_due_campaigns(self, manager, payload, storage, client):
        due, _ = manager.create({**payload, "scheduledAt": "2024-01-01T00:00:00Z"})
        future, _ = manager.create({**payload, "scheduledAt": "2099-01-01T00:00:00Z"})

        outcomes = manager.run_due_scheduled(now=datetime(2025, 1, 1))

        assert outcomes == [{"callId": due.id, "status": "completed", "error": None}]
        assert storage.get_call(due.id).status == "completed"
        assert storage.get_call(future.id).status == "scheduled"

    def test_failure_is_reported_and_processing_continues(self, manager, payload, client):
        first, _ = manager.create({**payload, "scheduledAt": "2024-01-01T00:00:00Z"})
        second, _ = manager.create({**payload, "scheduledAt": "2024-01-02T00:00:00Z"})
        client.create_campaign.side_effect = [
            VoiceBroadcastAPIError("rejected", upstream_status=400),
            CampaignSubmission(blast_id="B-3", api_response={}),
        ]

        outcomes = manager.run_due_scheduled(now=datetime(2025, 1, 1))

        assert outcomes == [
            {"callId": first.id, "status": "failed", "error": "rejected"},
            {"callId": second.id, "status": "completed", "error": None},
        ]
