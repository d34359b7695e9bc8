# backend/transfer_notify/notifications/config.py

"""
通知ルールエンジンの設定値をまとめるモジュール。
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from transfer_notify.utils.config import get_env, get_env_float, get_env_int


@dataclass(frozen=True)
class NotificationSettings:
    """通知ルールエンジン用の設定値コンテナ。"""

    max_workers: int = 8
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    deadline_seconds: float = 30.0
    app_base_url: str = "http://localhost:3000"
    provider_timeout_seconds: float = 10.0
    seed_file: Optional[str] = None

    resend_api_key: Optional[str] = None
    resend_from_email: str = "Round Table <notifications@roundtable.app>"
    resend_api_base_url: str = "https://api.resend.com"

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    twilio_api_base_url: str = "https://api.twilio.com"

    @property
    def email_configured(self) -> bool:
        return bool(self.resend_api_key)

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)


@lru_cache()
def get_notification_settings() -> NotificationSettings:
    """
    環境変数から通知設定を読み込む。すべて任意。

    - NOTIFY_MAX_WORKERS (デフォルト 8)
    - NOTIFY_RETRY_MAX_ATTEMPTS (デフォルト 3)
    - NOTIFY_RETRY_BACKOFF_SECONDS (デフォルト 0.5)
    - NOTIFY_DEADLINE_SECONDS (デフォルト 30)
    - NOTIFY_APP_BASE_URL (デフォルト http://localhost:3000)
    - NOTIFY_PROVIDER_TIMEOUT_SECONDS (デフォルト 10)
    - NOTIFY_SEED_FILE: 開発用のルール / テンプレート / ユーザー JSON
    - RESEND_API_KEY / RESEND_FROM_EMAIL / RESEND_API_BASE_URL
    - TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_PHONE_NUMBER / TWILIO_API_BASE_URL

    メール / SMS プロバイダの認証情報が無い場合はログ出力のみのプロバイダを使う。
    """
    defaults = NotificationSettings()
    return NotificationSettings(
        max_workers=get_env_int("NOTIFY_MAX_WORKERS", defaults.max_workers),
        retry_max_attempts=get_env_int("NOTIFY_RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts),
        retry_backoff_seconds=get_env_float(
            "NOTIFY_RETRY_BACKOFF_SECONDS", defaults.retry_backoff_seconds
        ),
        deadline_seconds=get_env_float("NOTIFY_DEADLINE_SECONDS", defaults.deadline_seconds),
        app_base_url=get_env("NOTIFY_APP_BASE_URL", default=defaults.app_base_url, required=False),
        provider_timeout_seconds=get_env_float(
            "NOTIFY_PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds
        ),
        seed_file=get_env("NOTIFY_SEED_FILE", default=None, required=False),
        resend_api_key=get_env("RESEND_API_KEY", default=None, required=False),
        resend_from_email=get_env(
            "RESEND_FROM_EMAIL", default=defaults.resend_from_email, required=False
        ),
        resend_api_base_url=get_env(
            "RESEND_API_BASE_URL", default=defaults.resend_api_base_url, required=False
        ),
        twilio_account_sid=get_env("TWILIO_ACCOUNT_SID", default=None, required=False),
        twilio_auth_token=get_env("TWILIO_AUTH_TOKEN", default=None, required=False),
        twilio_phone_number=get_env("TWILIO_PHONE_NUMBER", default=None, required=False),
        twilio_api_base_url=get_env(
            "TWILIO_API_BASE_URL", default=defaults.twilio_api_base_url, required=False
        ),
    )
