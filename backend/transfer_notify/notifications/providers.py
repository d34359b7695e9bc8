# backend/transfer_notify/notifications/providers.py

"""
配信プロバイダ（メール API / SMS ゲートウェイ）のインターフェースと実装。

- DeliveryProvider: send(channel, address, content) の最小インターフェース
- LoggingDeliveryProvider: ログ出力のみ（プロバイダ未設定時のデフォルト）
- ResendEmailProvider: Resend HTTP API 経由のメール送信
- TwilioSmsProvider: Twilio REST API 経由の SMS 送信
- ChannelRoutingProvider: チャンネルごとに実装を振り分ける

送信失敗は例外で表す。リトライ可否の判定は例外の型で行う:
- TransientDeliveryError: タイムアウト・接続エラー・408/429/5xx（リトライ対象）
- PermanentDeliveryError: 宛先不正・内容拒否などその他の 4xx（即時失敗）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from .schemas import NotificationChannel, RenderedContent

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """配信失敗全般の基底例外。"""


class TransientDeliveryError(DeliveryError):
    """一時的な失敗（リトライで回復しうる）。"""


class PermanentDeliveryError(DeliveryError):
    """恒久的な失敗（リトライしない）。"""


@dataclass(frozen=True)
class DeliveryReceipt:
    """送信成功時にプロバイダから返る受領情報。"""

    channel: NotificationChannel
    address: str
    message_id: Optional[str] = None


class DeliveryProvider(Protocol):
    def send(
        self,
        channel: NotificationChannel,
        address: str,
        content: RenderedContent,
    ) -> DeliveryReceipt:  # pragma: no cover - Protocol
        ...


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    """
    HTTP ステータスコードを一時的 / 恒久的失敗に振り分けて例外を投げる。
    """
    status = response.status_code
    if status // 100 == 2:
        return
    detail = f"{provider} API error: status_code={status} body={response.text[:200]}"
    if status in (408, 429) or status >= 500:
        raise TransientDeliveryError(detail)
    raise PermanentDeliveryError(detail)


def _message_id(response: httpx.Response, key: str) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get(key) is not None:
        return str(body[key])
    return None


class LoggingDeliveryProvider:
    """
    配信内容を logger に記録するだけのプロバイダ。

    - 外部サービスへの送信は行わない
    - 本文はログに出さず、件名と宛先のみ記録する
    """

    def __init__(self, logger_: logging.Logger | None = None) -> None:
        self._logger = logger_ or logger

    def send(
        self,
        channel: NotificationChannel,
        address: str,
        content: RenderedContent,
    ) -> DeliveryReceipt:
        if channel == NotificationChannel.EMAIL:
            self._logger.info("[%s] to=%s subject=%s", channel.value, address, content.subject)
        else:
            self._logger.info("[%s] to=%s length=%d", channel.value, address, len(content.body))
        return DeliveryReceipt(channel=channel, address=address)


class ResendEmailProvider:
    """
    Resend のメール送信 API への薄いラッパー。
    """

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._from_email = from_email
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def send(
        self,
        channel: NotificationChannel,
        address: str,
        content: RenderedContent,
    ) -> DeliveryReceipt:
        if channel != NotificationChannel.EMAIL:
            raise PermanentDeliveryError(f"ResendEmailProvider cannot send {channel.value}")

        payload: Dict[str, Any] = {
            "from": self._from_email,
            "to": [address],
            "subject": content.subject or "",
            "text": content.body,
        }
        if content.html:
            payload["html"] = content.html

        try:
            response = httpx.post(
                f"{self._base_url}/emails",
                headers=self._build_headers(),
                json=payload,
                timeout=self._timeout,
            )
        except httpx.RequestError as exc:  # 接続エラー・タイムアウトなど
            raise TransientDeliveryError(f"Failed to call Resend API: {exc}") from exc

        _raise_for_status(response, "Resend")
        return DeliveryReceipt(channel=channel, address=address, message_id=_message_id(response, "id"))


class TwilioSmsProvider:
    """
    Twilio Messages API への薄いラッパー。
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def send(
        self,
        channel: NotificationChannel,
        address: str,
        content: RenderedContent,
    ) -> DeliveryReceipt:
        if channel != NotificationChannel.SMS:
            raise PermanentDeliveryError(f"TwilioSmsProvider cannot send {channel.value}")

        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        try:
            response = httpx.post(
                url,
                data={"From": self._from_number, "To": address, "Body": content.body},
                auth=(self._account_sid, self._auth_token),
                timeout=self._timeout,
            )
        except httpx.RequestError as exc:
            raise TransientDeliveryError(f"Failed to call Twilio API: {exc}") from exc

        _raise_for_status(response, "Twilio")
        return DeliveryReceipt(channel=channel, address=address, message_id=_message_id(response, "sid"))


class ChannelRoutingProvider:
    """
    チャンネルごとのプロバイダに send() を振り分けるプロバイダ。

    呼び出し側（ディスパッチャ）はチャンネルを意識せずこのプロバイダだけを使えばよい。
    """

    def __init__(self, providers: Mapping[NotificationChannel, DeliveryProvider]) -> None:
        self._providers: Dict[NotificationChannel, DeliveryProvider] = dict(providers)

    def send(
        self,
        channel: NotificationChannel,
        address: str,
        content: RenderedContent,
    ) -> DeliveryReceipt:
        provider = self._providers.get(channel)
        if provider is None:
            raise PermanentDeliveryError(f"No provider configured for channel {channel.value}")
        return provider.send(channel, address, content)
