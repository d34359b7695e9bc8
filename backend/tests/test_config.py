# backend/tests/test_config.py

import logging

import pytest

from transfer_notify.notifications.config import get_notification_settings
from transfer_notify.notifications.factory import (
    build_provider,
    build_rule_engine,
    get_rule_engine,
    reset_rule_engine,
)
from transfer_notify.notifications.providers import (
    LoggingDeliveryProvider,
    ResendEmailProvider,
    TwilioSmsProvider,
)
from transfer_notify.notifications.schemas import NotificationChannel
from transfer_notify.utils.config import EnvVarMissingError, get_env

_PROVIDER_VARS = (
    "RESEND_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "NOTIFY_SEED_FILE",
)


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    for name in _PROVIDER_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_rule_engine()
    yield
    reset_rule_engine()


def test_get_env_required_and_optional(monkeypatch) -> None:
    monkeypatch.delenv("NOTIFY_TEST_VALUE", raising=False)

    with pytest.raises(EnvVarMissingError):
        get_env("NOTIFY_TEST_VALUE")
    assert get_env("NOTIFY_TEST_VALUE", default="x", required=False) == "x"

    monkeypatch.setenv("NOTIFY_TEST_VALUE", "")
    assert get_env("NOTIFY_TEST_VALUE", default="y", required=False) == "y"


def test_settings_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_MAX_WORKERS", "3")
    monkeypatch.setenv("NOTIFY_RETRY_BACKOFF_SECONDS", "0.25")
    monkeypatch.setenv("NOTIFY_APP_BASE_URL", "https://notify.example.com")

    settings = get_notification_settings()

    assert settings.max_workers == 3
    assert settings.retry_backoff_seconds == 0.25
    assert settings.app_base_url == "https://notify.example.com"
    assert settings.email_configured is False
    assert settings.sms_configured is False


def test_invalid_numbers_fall_back_to_defaults(monkeypatch, caplog) -> None:
    monkeypatch.setenv("NOTIFY_MAX_WORKERS", "many")

    with caplog.at_level(logging.WARNING):
        settings = get_notification_settings()

    assert settings.max_workers == 8
    assert any("NOTIFY_MAX_WORKERS" in r.getMessage() for r in caplog.records)


def test_provider_selection_follows_credentials(monkeypatch) -> None:
    settings = get_notification_settings()
    routing = build_provider(settings)
    assert isinstance(routing._providers[NotificationChannel.EMAIL], LoggingDeliveryProvider)
    assert isinstance(routing._providers[NotificationChannel.SMS], LoggingDeliveryProvider)

    reset_rule_engine()
    monkeypatch.setenv("RESEND_API_KEY", "re_key")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
    monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+15550000000")

    routing = build_provider(get_notification_settings())
    assert isinstance(routing._providers[NotificationChannel.EMAIL], ResendEmailProvider)
    assert isinstance(routing._providers[NotificationChannel.SMS], TwilioSmsProvider)


def test_engine_is_shared_until_reset() -> None:
    first = get_rule_engine()
    assert get_rule_engine() is first

    reset_rule_engine()
    assert get_rule_engine() is not first


def test_engine_loads_seed_file(tmp_path, monkeypatch) -> None:
    seed = tmp_path / "seed.json"
    seed.write_text(
        """
        {
          "rules": [{"id": "r1", "name": "Seeded", "event": "transfer_requested"}],
          "templates": [{"id": "tpl", "name": "T", "channels": {"sms": {"body_template": "hi"}}}],
          "users": [{"id": "u1", "name": "U", "email": "u@example.com"}]
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.setenv("NOTIFY_SEED_FILE", str(seed))

    engine = build_rule_engine(get_notification_settings())

    assert engine.get_rule("r1").name == "Seeded"
    assert engine.template_source.load_template("tpl") is not None
