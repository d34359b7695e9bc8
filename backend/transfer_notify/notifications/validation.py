# backend/transfer_notify/notifications/validation.py

"""
ルール保存時の設定バリデーションと、受信イベントの入口チェック。

実行時の評価器は設定ミスがあっても落ちない（未知フィールド = 値なし）ため、
設定エラーはここで保存前に検出して管理画面に返す。
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from pydantic import ValidationError

from . import fields
from .schemas import EventType, NotificationChannel, NotificationEvent, NotificationRule
from .sources import TemplateSource


class NotificationConfigError(RuntimeError):
    """通知設定（ルール・イベント種別）に起因するエラー。"""

    def __init__(self, message: str, issues: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.issues: List[str] = list(issues or [])


def validate_rule(
    rule: NotificationRule,
    template_source: Optional[TemplateSource] = None,
) -> List[str]:
    """
    ルール設定の問題点を文字列のリストで返す。空リストなら問題なし。

    検査内容:
    - 条件フィールドがイベント種別のレジストリに含まれること
    - active なルールは少なくとも 1 チャンネルが enabled であること
    - enabled なチャンネルは template_id を持つこと
    - template_source が渡された場合、テンプレートが存在し該当チャンネルを持つこと
    """
    issues: List[str] = []

    for index, condition in enumerate(rule.conditions):
        if not fields.is_known_field(rule.event, condition.field):
            issues.append(
                f"conditions[{index}]: unknown field '{condition.field}' "
                f"for event '{rule.event.value}'"
            )

    enabled = [ch for ch in NotificationChannel if rule.channels.get(ch).enabled]
    if rule.active and not enabled:
        issues.append("active rule must enable at least one channel")

    for channel in enabled:
        template_id = rule.channels.get(channel).template_id
        if not template_id:
            issues.append(f"channels.{channel.value}: enabled channel requires template_id")
            continue
        if template_source is None:
            continue

        template = template_source.load_template(template_id)
        if template is None:
            issues.append(f"channels.{channel.value}: template '{template_id}' not found")
        elif not template.has_channel(channel):
            issues.append(
                f"channels.{channel.value}: template '{template_id}' "
                f"has no {channel.value} content"
            )

    return issues


def ensure_valid_rule(
    rule: NotificationRule,
    template_source: Optional[TemplateSource] = None,
) -> None:
    """
    validate_rule() で問題が見つかった場合に NotificationConfigError を投げる。
    """
    issues = validate_rule(rule, template_source)
    if issues:
        raise NotificationConfigError(
            f"Rule '{rule.id}' has {len(issues)} configuration issue(s).",
            issues=issues,
        )


def parse_event(data: Mapping[str, Any]) -> NotificationEvent:
    """
    外部から受け取った辞書を NotificationEvent に変換する。

    未知のイベント種別は黙って無視せず NotificationConfigError とする。
    """
    raw_type = data.get("event_type")
    known = {e.value for e in EventType}
    if raw_type not in known:
        raise NotificationConfigError(f"Unknown event type: {raw_type!r}")

    try:
        return NotificationEvent.model_validate(dict(data))
    except ValidationError as exc:
        raise NotificationConfigError(f"Invalid event: {exc}") from exc
