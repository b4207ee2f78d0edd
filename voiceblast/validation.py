"""
リクエスト検証モジュール (Request Validation Module)

REST API のリクエストボディ・クエリを検証し、正規化した値を返します。
検証に失敗した場合はフィールドごとのエラーを details に持つ
ValidationError を送出します。
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import CALL_RESULT_STATUSES, CALL_STATUSES


MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 1000
MAX_RETRY = 10
DEFAULT_RETRY = 3
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100

_NON_DIGIT = re.compile(r"\D")


class _ErrorCollector:
    """フィールドエラーを蓄積し、まとめて ValidationError を送出する"""

    def __init__(self) -> None:
        self.errors: List[Dict[str, str]] = []

    def add(self, field: str, message: str) -> None:
        self.errors.append({"field": field, "message": message})

    def raise_if_any(self) -> None:
        if self.errors:
            raise ValidationError("Validation failed", details=self.errors)


# ----------------------------------------------------------------------
# 電話番号
# ----------------------------------------------------------------------

def normalize_phone_number(phone_number: Any) -> str:
    """数字以外の文字を取り除く"""
    return _NON_DIGIT.sub("", str(phone_number or ""))


def is_valid_phone_number(phone_number: str) -> bool:
    """正規化済み番号が 10〜15 桁であれば有効"""
    return phone_number.isdigit() and 10 <= len(phone_number) <= 15


def split_phone_numbers(phone_numbers: List[Any]) -> Tuple[List[str], List[str]]:
    """
    電話番号リストを有効・無効に分割

    有効な番号は正規化した上で重複を除去し、入力順を保ちます。

    Returns:
        (有効な番号のリスト, 無効な入力値のリスト)
    """
    valid: List[str] = []
    invalid: List[str] = []
    for raw in phone_numbers:
        cleaned = normalize_phone_number(raw)
        if is_valid_phone_number(cleaned):
            if cleaned not in valid:
                valid.append(cleaned)
        else:
            invalid.append(str(raw))
    return valid, invalid


def format_dispatch_number(phone_number: str, dial_prefix: str) -> str:
    """
    外部 API へ送る形式に番号を整形

    0 始まりの 11 桁の国内番号には国番号を付与します（例: 017... -> 88017...）。
    """
    cleaned = normalize_phone_number(phone_number)
    if dial_prefix and len(cleaned) == 11 and cleaned.startswith("0"):
        return f"{dial_prefix}{cleaned}"
    return cleaned


# ----------------------------------------------------------------------
# 値の変換
# ----------------------------------------------------------------------

def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _parse_non_negative_float(
    errors: _ErrorCollector,
    field: str,
    value: Any,
    label: str
) -> Optional[float]:
    if _is_blank(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors.add(field, f"{label} must be a positive number")
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        errors.add(field, f"{label} must be a positive number")
        return None
    return number


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    ISO 8601 文字列を解析

    タイムゾーン付きの値は UTC に変換し、タイムゾーン情報を除いて返します。
    解析できない場合は None を返します。
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _check_name(errors: _ErrorCollector, field: str, value: Any, label: str, required: bool) -> Optional[str]:
    if value is None and not required:
        return None
    if not isinstance(value, str) or value.strip() == "":
        errors.add(field, f"{label} is required" if required else f"{label} cannot be empty")
        return None
    value = value.strip()
    if len(value) > MAX_NAME_LENGTH:
        errors.add(field, f"{label} must be less than {MAX_NAME_LENGTH} characters")
        return None
    return value


def _check_trim_order(errors: _ErrorCollector, trim_start: Optional[float], trim_end: Optional[float]) -> None:
    if trim_start is not None and trim_end is not None and trim_end <= trim_start:
        errors.add("trimEnd", "Trim end must be greater than trim start")


# ----------------------------------------------------------------------
# Recording
# ----------------------------------------------------------------------

def validate_recording_upload(form: Mapping[str, Any]) -> Dict[str, Any]:
    """
    録音アップロードのフォーム値を検証

    Returns:
        custom_name, duration, trim_start, trim_end を含む辞書
    """
    errors = _ErrorCollector()
    custom_name = _check_name(errors, "customName", form.get("customName"), "Custom name", required=True)
    duration = _parse_non_negative_float(errors, "duration", form.get("duration"), "Duration")
    trim_start = _parse_non_negative_float(errors, "trimStart", form.get("trimStart"), "Trim start")
    trim_end = _parse_non_negative_float(errors, "trimEnd", form.get("trimEnd"), "Trim end")
    _check_trim_order(errors, trim_start, trim_end)
    errors.raise_if_any()

    return {
        "custom_name": custom_name,
        "duration": duration,
        "trim_start": trim_start if trim_start is not None else 0.0,
        "trim_end": trim_end,
    }


def validate_recording_update(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    録音メタデータ更新の入力を検証

    Returns:
        指定されたフィールドのみを含む辞書
    """
    errors = _ErrorCollector()
    updates: Dict[str, Any] = {}

    if "customName" in data:
        name = _check_name(errors, "customName", data.get("customName"), "Custom name", required=False)
        if name is not None:
            updates["custom_name"] = name
    if "trimStart" in data:
        updates["trim_start"] = _parse_non_negative_float(errors, "trimStart", data.get("trimStart"), "Trim start") or 0.0
    if "trimEnd" in data:
        updates["trim_end"] = _parse_non_negative_float(errors, "trimEnd", data.get("trimEnd"), "Trim end")

    _check_trim_order(errors, updates.get("trim_start"), updates.get("trim_end"))
    errors.raise_if_any()
    return updates


def validate_trim_request(data: Mapping[str, Any]) -> Tuple[float, float]:
    """
    トリミング範囲を検証

    Returns:
        (開始秒, 終了秒)
    """
    errors = _ErrorCollector()
    trim_start = _parse_non_negative_float(errors, "trimStart", data.get("trimStart"), "Trim start")
    trim_end = _parse_non_negative_float(errors, "trimEnd", data.get("trimEnd"), "Trim end")
    if _is_blank(data.get("trimEnd")):
        errors.add("trimEnd", "Trim end is required")
    _check_trim_order(errors, trim_start, trim_end)
    errors.raise_if_any()
    return (trim_start or 0.0), trim_end


# ----------------------------------------------------------------------
# Call
# ----------------------------------------------------------------------

def _check_caller_id(errors: _ErrorCollector, value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    cleaned = normalize_phone_number(value)
    if not is_valid_phone_number(cleaned):
        errors.add("callerId", "Invalid caller ID format")
        return None
    return cleaned


def _check_retry(errors: _ErrorCollector, value: Any) -> Optional[int]:
    retry = _parse_int(value)
    if retry is None or retry < 0 or retry > MAX_RETRY:
        errors.add("retry", f"Retry count must be between 0 and {MAX_RETRY}")
        return None
    return retry


def _check_description(errors: _ErrorCollector, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        errors.add("description", "Description must be a string")
        return None
    if len(value) > MAX_DESCRIPTION_LENGTH:
        errors.add("description", f"Description must be less than {MAX_DESCRIPTION_LENGTH} characters")
        return None
    return value.strip() or None


def _check_phone_numbers(errors: _ErrorCollector, value: Any) -> Tuple[List[str], List[str]]:
    if not isinstance(value, list) or len(value) == 0:
        errors.add("phoneNumbers", "Phone numbers must be a non-empty array")
        return [], []
    if any(_is_blank(item) for item in value):
        errors.add("phoneNumbers", "Phone numbers cannot be empty")
        return [], []
    valid, invalid = split_phone_numbers(value)
    if not valid:
        errors.add("phoneNumbers", "No valid phone numbers provided")
    return valid, invalid


def validate_call_creation(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    キャンペーン作成リクエストを検証

    Returns:
        title, description, recording_id, phone_numbers, invalid_numbers,
        caller_id, retry, scheduled_at を含む辞書
    """
    errors = _ErrorCollector()

    title = _check_name(errors, "title", data.get("title"), "Title", required=True)
    description = _check_description(errors, data.get("description"))

    recording_id = _parse_int(data.get("recordingId"))
    if recording_id is None:
        errors.add("recordingId", "Recording ID must be a valid integer")

    phone_numbers, invalid_numbers = _check_phone_numbers(errors, data.get("phoneNumbers"))
    caller_id = _check_caller_id(errors, data.get("callerId"))

    retry = DEFAULT_RETRY
    if data.get("retry") is not None:
        retry = _check_retry(errors, data.get("retry"))

    scheduled_at = None
    if not _is_blank(data.get("scheduledAt")):
        scheduled_at = parse_datetime(data.get("scheduledAt"))
        if scheduled_at is None:
            errors.add("scheduledAt", "Scheduled date must be in ISO 8601 format")

    errors.raise_if_any()

    return {
        "title": title,
        "description": description,
        "recording_id": recording_id,
        "phone_numbers": phone_numbers,
        "invalid_numbers": invalid_numbers,
        "caller_id": caller_id,
        "retry": retry,
        "scheduled_at": scheduled_at,
    }


def validate_call_update(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    キャンペーン更新リクエストを検証

    Returns:
        指定されたフィールドのみを含む辞書
    """
    errors = _ErrorCollector()
    updates: Dict[str, Any] = {}

    if "title" in data:
        title = _check_name(errors, "title", data.get("title"), "Title", required=False)
        if title is not None:
            updates["title"] = title
    if "description" in data:
        updates["description"] = _check_description(errors, data.get("description"))
    if "callerId" in data:
        updates["caller_id"] = _check_caller_id(errors, data.get("callerId"))
    if "retry" in data:
        retry = _check_retry(errors, data.get("retry"))
        if retry is not None:
            updates["retry"] = retry
    if "phoneNumbers" in data:
        phone_numbers, invalid_numbers = _check_phone_numbers(errors, data.get("phoneNumbers"))
        if phone_numbers:
            updates["phone_numbers"] = phone_numbers
            updates["invalid_numbers"] = invalid_numbers
    if "scheduledAt" in data:
        if _is_blank(data.get("scheduledAt")):
            updates["scheduled_at"] = None
        else:
            scheduled_at = parse_datetime(data.get("scheduledAt"))
            if scheduled_at is None:
                errors.add("scheduledAt", "Scheduled date must be in ISO 8601 format")
            else:
                updates["scheduled_at"] = scheduled_at
    if "status" in data:
        status = data.get("status")
        if status not in CALL_STATUSES:
            errors.add("status", "Invalid status")
        else:
            updates["status"] = status

    errors.raise_if_any()
    return updates


def validate_pagination(args: Mapping[str, Any]) -> Tuple[int, int, Optional[str]]:
    """
    ページネーションのクエリを検証

    Returns:
        (page, limit, status)
    """
    errors = _ErrorCollector()

    page = 1
    if not _is_blank(args.get("page")):
        page = _parse_int(args.get("page"))
        if page is None or page < 1:
            errors.add("page", "Page must be a positive integer")

    limit = DEFAULT_PAGE_LIMIT
    if not _is_blank(args.get("limit")):
        limit = _parse_int(args.get("limit"))
        if limit is None or limit < 1 or limit > MAX_PAGE_LIMIT:
            errors.add("limit", f"Limit must be between 1 and {MAX_PAGE_LIMIT}")

    status = args.get("status") or None
    if status is not None and status not in CALL_STATUSES:
        errors.add("status", "Invalid status")

    errors.raise_if_any()
    return page, limit, status


def validate_call_result_status(value: Any) -> str:
    """個別発信ステータスを検証し、未知の値は 'pending' として扱う"""
    if isinstance(value, str) and value in CALL_RESULT_STATUSES:
        return value
    return "pending"
