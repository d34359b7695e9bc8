# backend/transfer_notify/notifications/templates.py

"""
通知テンプレートの展開処理。

サポートする記法:
- 変数: {{vehicle.make}} / {{transfer.to_location.name}} / {{priority}}（エイリアス）
- 条件ブロック: {{#if transfer.notes}}...{{/if}}（値が truthy のときだけ中身を残す）

テンプレートは管理者が自由に編集するテキストなので、未知の変数は空文字に
置き換え、例外は投げない。同じ入力からは常に同じ出力を返す
（ルール間重複排除のコンテンツハッシュがこれに依存する）。
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from . import fields
from .schemas import (
    DirectoryUser,
    NotificationChannel,
    NotificationEvent,
    NotificationTemplate,
    RenderedContent,
)

logger = logging.getLogger(__name__)

_CONDITIONAL_RE = re.compile(r"\{\{#if\s+([^}]+)\}\}([\s\S]*?)\{\{/if\}\}")
_VARIABLE_RE = re.compile(r"\{\{([^}]+)\}\}")


def _is_truthy(value: Any) -> bool:
    if value is fields.MISSING or value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def process_template(template: Optional[str], data: Mapping[str, Any]) -> str:
    """
    テンプレート文字列を data で展開する。条件ブロック → 変数の順に処理する。
    """
    if not template:
        return ""

    def _replace_block(match: "re.Match[str]") -> str:
        value = fields.get_field_value(data, match.group(1).strip())
        return match.group(2) if _is_truthy(value) else ""

    def _replace_variable(match: "re.Match[str]") -> str:
        name = match.group(1).strip()
        if name.startswith("#if") or name == "/if":
            return match.group(0)
        value = fields.get_field_value(data, name)
        if value is fields.MISSING:
            logger.debug("Template variable has no value. variable=%s", name)
            return ""
        return fields.stringify(value)

    processed = _CONDITIONAL_RE.sub(_replace_block, template)
    return _VARIABLE_RE.sub(_replace_variable, processed)


def content_hash(content: RenderedContent) -> str:
    """
    展開済みコンテンツの同一性判定用ハッシュ。
    """
    digest = hashlib.sha256()
    for part in (content.channel.value, content.subject or "", content.body, content.html or ""):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


class TemplateRenderer:
    """
    NotificationTemplate をイベント・受信者コンテキストで展開するレンダラー。

    system.* と link.* 変数はイベントの発生時刻と設定済みのベース URL から
    導出するので、描画結果は壁時計に依存しない。
    """

    def __init__(self, app_base_url: str = "http://localhost:3000") -> None:
        self._app_base_url = app_base_url.rstrip("/")

    def build_data(
        self,
        event: NotificationEvent,
        recipient: Optional[DirectoryUser] = None,
    ) -> Dict[str, Any]:
        data = fields.build_context(
            event.payload,
            recipient.as_context() if recipient is not None else None,
        )

        occurred = event.occurred_at
        data["system"] = {
            "date": occurred.strftime("%B %d, %Y").replace(" 0", " "),
            "time": occurred.strftime("%I:%M %p").lstrip("0"),
        }

        transfer = event.payload.get("transfer")
        links: Dict[str, str] = {"dashboard": f"{self._app_base_url}/dashboard"}
        if isinstance(transfer, Mapping) and transfer.get("id"):
            transfer_id = fields.stringify(transfer["id"])
            links["view_transfer"] = f"{self._app_base_url}/transfers/{transfer_id}"
            links["approve_transfer"] = f"{self._app_base_url}/admin/transfers?id={transfer_id}"
        data["link"] = links
        return data

    def render_channel(
        self,
        template: NotificationTemplate,
        channel: NotificationChannel,
        event: NotificationEvent,
        recipient: Optional[DirectoryUser] = None,
    ) -> Optional[RenderedContent]:
        """
        指定チャンネルの内容を展開する。テンプレートがそのチャンネルを持たなければ None。
        """
        data = self.build_data(event, recipient)

        if channel == NotificationChannel.EMAIL:
            email = template.channels.email
            if email is None:
                return None
            html = process_template(email.html_template, data) if email.html_template else None
            return RenderedContent(
                channel=channel,
                subject=process_template(email.subject_template, data),
                body=process_template(email.body_template, data),
                html=html,
            )

        sms = template.channels.sms
        if sms is None:
            return None
        return RenderedContent(channel=channel, body=process_template(sms.body_template, data))

    def render(
        self,
        template: NotificationTemplate,
        event: NotificationEvent,
        recipient: Optional[DirectoryUser] = None,
    ) -> Dict[NotificationChannel, RenderedContent]:
        """
        テンプレートが持つ全チャンネルを展開して返す（プレビュー用）。
        """
        rendered: Dict[NotificationChannel, RenderedContent] = {}
        for channel in NotificationChannel:
            content = self.render_channel(template, channel, event, recipient)
            if content is not None:
                rendered[channel] = content
        return rendered


def template_variables() -> Dict[str, List[Dict[str, str]]]:
    """
    テンプレートエディタに表示する利用可能な変数の一覧。
    """
    return {
        "vehicle": [
            {"key": "vehicle.year", "description": "Vehicle model year", "example": "2024"},
            {"key": "vehicle.make", "description": "Vehicle manufacturer", "example": "Toyota"},
            {"key": "vehicle.model", "description": "Vehicle model name", "example": "Camry"},
            {"key": "vehicle.vin", "description": "Vehicle identification number", "example": "1HGCM82633A123456"},
            {"key": "vehicle.stock_number", "description": "Dealer stock number", "example": "STK-12345"},
            {"key": "vehicle.price", "description": "Vehicle price", "example": "25999"},
            {"key": "vehicle.mileage", "description": "Current mileage", "example": "15234"},
            {"key": "vehicle.color", "description": "Vehicle color", "example": "Silver Metallic"},
            {"key": "vehicle.location.name", "description": "Current location", "example": "Store 1"},
        ],
        "transfer": [
            {"key": "transfer.from_location.name", "description": "Origin location", "example": "Store 1"},
            {"key": "transfer.to_location.name", "description": "Destination location", "example": "Store 3"},
            {"key": "transfer.requested_by.name", "description": "Requester name", "example": "John Smith"},
            {"key": "transfer.requested_by.email", "description": "Requester email", "example": "john@dealer.com"},
            {"key": "transfer.approved_by.name", "description": "Approver name", "example": "Jane Doe"},
            {"key": "transfer.status", "description": "Current status", "example": "approved"},
            {"key": "transfer.priority", "description": "Priority level", "example": "urgent"},
            {"key": "transfer.notes", "description": "Transfer notes", "example": "Customer waiting"},
            {"key": "transfer.cancellation_reason", "description": "Cancellation reason", "example": "Vehicle sold"},
        ],
        "user": [
            {"key": "user.name", "description": "Recipient name", "example": "Mike Johnson"},
            {"key": "user.email", "description": "Recipient email", "example": "mike@dealer.com"},
            {"key": "user.role", "description": "Recipient role", "example": "manager"},
        ],
        "system": [
            {"key": "system.date", "description": "Event date", "example": "January 8, 2025"},
            {"key": "system.time", "description": "Event time", "example": "2:30 PM"},
        ],
        "link": [
            {"key": "link.view_transfer", "description": "Transfer details link", "example": "https://app.example.com/transfers/123"},
            {"key": "link.approve_transfer", "description": "Approval link", "example": "https://app.example.com/admin/transfers?id=123"},
            {"key": "link.dashboard", "description": "Dashboard link", "example": "https://app.example.com/dashboard"},
        ],
    }
