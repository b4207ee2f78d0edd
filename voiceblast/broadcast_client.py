"""
音声一斉配信 API クライアントモジュール (Voice Broadcast Client Module)

外部の音声一斉配信（ロボコール）API にキャンペーンを登録し、
配信レポートを取得します。認証は Basic 認証に加え、
API が要求する user / pass ヘッダーを送信します。
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .errors import VoiceBroadcastAPIError
from .log import get_logger


@dataclass
class CampaignSubmission:
    """
    キャンペーン登録結果

    Attributes:
        blast_id: 外部 API が採番したキャンペーン識別子
        api_response: 外部 API のレスポンス本文
    """
    blast_id: Optional[str]
    api_response: Any


class VoiceBroadcastClient:
    """
    音声一斉配信 API クライアント

    Attributes:
        blast_url: キャンペーン登録エンドポイント
        report_url: レポート取得エンドポイント
        timeout: リクエストタイムアウト（秒）
    """

    def __init__(
        self,
        blast_url: str,
        report_url: str,
        api_user: str,
        api_pass: str,
        timeout: int = 60,
        session: Optional[requests.Session] = None
    ):
        self.blast_url = blast_url
        self.report_url = report_url
        self.api_user = api_user
        self.api_pass = api_pass
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = get_logger(__name__)

    def _auth_headers(self) -> Dict[str, str]:
        return {"user": self.api_user, "pass": self.api_pass}

    def create_campaign(
        self,
        phone_numbers: List[str],
        audio_path: str,
        caller_id: Optional[str] = None,
        retry: int = 1
    ) -> CampaignSubmission:
        """
        キャンペーンを登録して即時実行

        multipart/form-data で callerid, voice（WAV ファイル）, retry,
        arr_dst（電話番号の JSON 配列）を送信します。

        Args:
            phone_numbers: 発信先電話番号
            audio_path: 送信する WAV ファイルのパス
            caller_id: 発信者番号
            retry: リトライ回数

        Returns:
            CampaignSubmission

        Raises:
            VoiceBroadcastAPIError: 通信エラーまたは API がエラーを返した場合
        """
        form = {
            "callerid": caller_id or "",
            "retry": str(retry),
            "arr_dst": json.dumps(phone_numbers),
        }

        self.logger.info(
            "broadcast_campaign_submitting",
            url=self.blast_url,
            caller_id=form["callerid"],
            retry=retry,
            phone_count=len(phone_numbers),
            audio_path=audio_path
        )

        with open(audio_path, "rb") as voice:
            files = {"voice": (os.path.basename(audio_path), voice, "audio/wav")}
            response = self._post(self.blast_url, data=form, files=files)

        payload = self._parse_body(response)
        blast_id = None
        if isinstance(payload, dict) and payload.get("blast_id") is not None:
            blast_id = str(payload["blast_id"])

        self.logger.info(
            "broadcast_campaign_submitted",
            blast_id=blast_id,
            status_code=response.status_code
        )
        return CampaignSubmission(blast_id=blast_id, api_response=payload)

    def get_report(self, blast_id: str) -> Any:
        """
        キャンペーンの配信レポートを取得

        Args:
            blast_id: 外部 API のキャンペーン識別子

        Returns:
            レポート（レスポンス本文）

        Raises:
            VoiceBroadcastAPIError: 通信エラーまたは API がエラーを返した場合
        """
        self.logger.debug("broadcast_report_requested", blast_id=blast_id)
        response = self._post(self.report_url, data={"blast_id": str(blast_id)})
        return self._parse_body(response)

    def _post(self, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.post(
                url,
                auth=(self.api_user, self.api_pass),
                headers=self._auth_headers(),
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            self.logger.error("broadcast_api_request_failed", url=url, error=str(e), exc_info=True)
            raise VoiceBroadcastAPIError(f"Voice broadcast API request failed: {e}") from e

        if not response.ok:
            details = self._parse_body(response)
            message = None
            if isinstance(details, dict):
                message = details.get("message") or details.get("error")
            self.logger.error(
                "broadcast_api_error_response",
                url=url,
                status_code=response.status_code,
                details=details
            )
            raise VoiceBroadcastAPIError(
                str(message or f"Voice broadcast API returned HTTP {response.status_code}"),
                upstream_status=response.status_code,
                details=details
            )
        return response

    @staticmethod
    def _parse_body(response: requests.Response) -> Any:
        """JSON として解析し、失敗した場合はテキストを返す"""
        try:
            return response.json()
        except ValueError:
            return response.text
