# backend/transfer_notify/notifications/__init__.py

"""
通知ルールエンジン用モジュール群。

ドメインイベント（振替申請・承認など）を受け取り、管理者が設定したルールに
従って受信者を決め、テンプレートを展開してメール / SMS で配信する。

構成イメージ:
- schemas: イベント・ルール・テンプレート・配信結果の共通スキーマ
- fields: イベント種別ごとのフィールドレジストリ
- evaluator: ルール条件の評価
- recipients: 受信者解決
- templates: テンプレート展開
- providers / dispatcher: 配信プロバイダと並列配信・リトライ・フォールバック
- engine: 上記をまとめるオーケストレータとドライラン
- factory: アプリ全体で共有する RuleEngine の生成
"""

from .engine import RuleEngine, TemplateNotFoundError
from .schemas import (
    ChannelPriority,
    DeliveryStatus,
    DispatchReport,
    DryRunResult,
    EventType,
    NotificationChannel,
    NotificationEvent,
    NotificationRule,
    NotificationTemplate,
)

__all__ = [
    "ChannelPriority",
    "DeliveryStatus",
    "DispatchReport",
    "DryRunResult",
    "EventType",
    "NotificationChannel",
    "NotificationEvent",
    "NotificationRule",
    "NotificationTemplate",
    "RuleEngine",
    "TemplateNotFoundError",
]
