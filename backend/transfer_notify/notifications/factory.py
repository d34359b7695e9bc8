# backend/transfer_notify/notifications/factory.py

"""
通知ルールエンジンの簡易ファクトリ。

- 設定（環境変数）に応じてメール / SMS プロバイダを選ぶ。
  認証情報が無いチャンネルはログ出力のみのプロバイダにする。
- NOTIFY_SEED_FILE が設定されていればルール / テンプレート / ユーザーを読み込む。
  未設定なら空のインメモリストアで起動する。
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .audit import AuditSink, LoggingAuditSink, QueuedAuditSink
from .config import NotificationSettings, get_notification_settings
from .dispatcher import ChannelDispatcher, RetryPolicy
from .engine import RuleEngine
from .providers import (
    ChannelRoutingProvider,
    DeliveryProvider,
    LoggingDeliveryProvider,
    ResendEmailProvider,
    TwilioSmsProvider,
)
from .schemas import NotificationChannel
from .sources import (
    InMemoryRuleStore,
    InMemoryTemplateStore,
    InMemoryUserDirectory,
    RuleSource,
    TemplateSource,
    UserDirectory,
    load_seed_file,
)
from .templates import TemplateRenderer

logger = logging.getLogger(__name__)

_rule_engine: Optional[RuleEngine] = None


def build_provider(settings: NotificationSettings) -> ChannelRoutingProvider:
    """
    設定からチャンネル別プロバイダを組み立てる。
    """
    providers: Dict[NotificationChannel, DeliveryProvider] = {}
    fallback = LoggingDeliveryProvider()

    if settings.email_configured:
        providers[NotificationChannel.EMAIL] = ResendEmailProvider(
            settings.resend_api_key or "",
            settings.resend_from_email,
            base_url=settings.resend_api_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        logger.info("Email provider not configured; using logging provider.")
        providers[NotificationChannel.EMAIL] = fallback

    if settings.sms_configured:
        providers[NotificationChannel.SMS] = TwilioSmsProvider(
            settings.twilio_account_sid or "",
            settings.twilio_auth_token or "",
            settings.twilio_phone_number or "",
            base_url=settings.twilio_api_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        logger.info("SMS provider not configured; using logging provider.")
        providers[NotificationChannel.SMS] = fallback

    return ChannelRoutingProvider(providers)


def build_rule_engine(
    settings: Optional[NotificationSettings] = None,
    *,
    rule_source: Optional[RuleSource] = None,
    template_source: Optional[TemplateSource] = None,
    directory: Optional[UserDirectory] = None,
    provider: Optional[DeliveryProvider] = None,
    audit_sink: Optional[AuditSink] = None,
) -> RuleEngine:
    """
    設定とコラボレーターから RuleEngine を組み立てる。

    明示的に渡されたコラボレーターが優先され、無いものだけ設定から作る。
    """
    settings = settings or get_notification_settings()

    if rule_source is None or template_source is None or directory is None:
        if settings.seed_file:
            seed_rules, seed_templates, seed_users = load_seed_file(settings.seed_file)
        else:
            seed_rules, seed_templates, seed_users = (
                InMemoryRuleStore(),
                InMemoryTemplateStore(),
                InMemoryUserDirectory(),
            )
        rule_source = rule_source or seed_rules
        template_source = template_source or seed_templates
        directory = directory or seed_users

    dispatcher = ChannelDispatcher(
        provider or build_provider(settings),
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            backoff_base_seconds=settings.retry_backoff_seconds,
        ),
        max_workers=settings.max_workers,
    )

    return RuleEngine(
        rule_source,
        template_source,
        directory,
        dispatcher,
        renderer=TemplateRenderer(settings.app_base_url),
        audit_sink=audit_sink or QueuedAuditSink(LoggingAuditSink()),
        deadline_seconds=settings.deadline_seconds,
    )


def get_rule_engine() -> RuleEngine:
    """
    アプリ全体で共有する RuleEngine を返す。

    初回呼び出し時にのみ生成し、それ以降は同じインスタンスを返す。
    """
    global _rule_engine
    if _rule_engine is None:
        _rule_engine = build_rule_engine()
    return _rule_engine


def reset_rule_engine() -> None:
    """
    共有インスタンスと設定キャッシュを破棄する（テスト・設定再読み込み用）。
    """
    global _rule_engine
    if _rule_engine is not None and isinstance(_rule_engine.audit_sink, QueuedAuditSink):
        _rule_engine.audit_sink.close()
    _rule_engine = None
    get_notification_settings.cache_clear()
