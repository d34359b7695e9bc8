# backend/tests/conftest.py
"""
Pytest configuration for transfer notification backend tests.

- Ensures that the project root (backend/) is added to sys.path
  so that `import transfer_notify.*` works correctly in tests.
- Ensures environment variables for tests are set with safe dummy values
  (no real email / SMS provider is ever configured here).
- Provides a small dealership world (locations, users, templates) shared by
  the recipient / engine / router tests.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


def _ensure_project_root_in_sys_path() -> None:
    # This file is located at: backend/tests/conftest.py
    # parents[1] -> backend/
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)

    if project_root_str not in sys.path:
        # Insert at the beginning so it has priority over site-packages, etc.
        sys.path.insert(0, project_root_str)


def _ensure_test_env_vars() -> None:
    """
    Set dummy environment variables required for tests.

    Provider credentials are intentionally left unset so that the factory
    falls back to the logging provider.
    """
    os.environ.setdefault("NOTIFY_RETRY_BACKOFF_SECONDS", "0")
    os.environ.setdefault("NOTIFY_DEADLINE_SECONDS", "5")
    os.environ.setdefault("NOTIFY_APP_BASE_URL", "https://app.example.com")


_ensure_project_root_in_sys_path()
_ensure_test_env_vars()


from transfer_notify.notifications.schemas import (  # noqa: E402
    DirectoryUser,
    EmailTemplateContent,
    NotificationTemplate,
    Role,
    SmsTemplateContent,
    TemplateChannels,
)
from transfer_notify.notifications.sources import (  # noqa: E402
    InMemoryTemplateStore,
    InMemoryUserDirectory,
)

EVENT_TIME = datetime(2025, 1, 8, 14, 30, tzinfo=timezone.utc)


def make_users():
    """
    L1: manager / sales, L2: manager / transport, L3: manager（非アクティブ）。
    """
    return [
        DirectoryUser(
            id="u-m1",
            name="Mike Manager",
            email="Mike@Dealer.com",
            phone="(555) 111-0001",
            role=Role.MANAGER,
            location_id="L1",
        ),
        DirectoryUser(
            id="u-s1",
            name="Sam Sales",
            email="sam@dealer.com",
            phone="555-111-0002",
            role=Role.SALES,
            location_id="L1",
        ),
        DirectoryUser(
            id="u-m2",
            name="Mia Manager",
            email="mia@dealer.com",
            phone="+15551110003",
            role=Role.MANAGER,
            location_id="L2",
        ),
        DirectoryUser(
            id="u-t2",
            name="Tom Transport",
            email="tom@dealer.com",
            phone=None,
            role=Role.TRANSPORT,
            location_id="L2",
        ),
        DirectoryUser(
            id="u-m3",
            name="Old Manager",
            email="old@dealer.com",
            role=Role.MANAGER,
            location_id="L3",
            active=False,
        ),
        DirectoryUser(
            id="u-a1",
            name="Ada Admin",
            email="ada@dealer.com",
            phone="5551110009",
            role=Role.ADMIN,
            location_id="HQ",
        ),
    ]


def make_templates():
    return [
        NotificationTemplate(
            id="tpl-transfer",
            name="Transfer notice",
            channels=TemplateChannels(
                email=EmailTemplateContent(
                    subject_template="Transfer: {{vehicle.year}} {{vehicle.make}} {{vehicle.model}}",
                    body_template=(
                        "Hi {{user.name}}, {{vehicle.make}} moves to {{transfer.to_location.name}}."
                        "{{#if transfer.notes}} Notes: {{transfer.notes}}{{/if}}"
                    ),
                    html_template="<p>{{vehicle.make}}</p><a href=\"{{link.view_transfer}}\">View</a>",
                ),
                sms=SmsTemplateContent(
                    body_template="{{vehicle.make}} {{vehicle.model}} transfer ({{transfer.priority}})",
                ),
            ),
        ),
        NotificationTemplate(
            id="tpl-static",
            name="Static notice",
            channels=TemplateChannels(
                email=EmailTemplateContent(
                    subject_template="Vehicle update",
                    body_template="Vehicle {{vehicle.stock_number}} was updated.",
                ),
                sms=SmsTemplateContent(body_template="Vehicle {{vehicle.stock_number}} updated"),
            ),
        ),
        NotificationTemplate(
            id="tpl-email-only",
            name="Email only",
            channels=TemplateChannels(
                email=EmailTemplateContent(subject_template="Hello", body_template="Body"),
            ),
        ),
        NotificationTemplate(
            id="tpl-inactive",
            name="Retired",
            active=False,
            channels=TemplateChannels(
                email=EmailTemplateContent(subject_template="Old", body_template="Old"),
                sms=SmsTemplateContent(body_template="Old"),
            ),
        ),
    ]


def make_transfer_payload(**transfer_overrides):
    transfer = {
        "id": "t-100",
        "status": "pending",
        "priority": "normal",
        "customer_waiting": False,
        "from_location_id": "L1",
        "to_location_id": "L2",
        "from_location": {"name": "Store 1"},
        "to_location": {"name": "Store 2"},
        "requested_by": {"id": "u-r9", "name": "Rita Requester", "email": "rita@dealer.com"},
    }
    transfer.update(transfer_overrides)
    return {
        "vehicle": {
            "id": "v-1",
            "location_id": "L1",
            "year": 2024,
            "make": "Toyota",
            "model": "Camry",
            "stock_number": "STK-1",
            "price": 25999.0,
        },
        "transfer": transfer,
    }


@pytest.fixture
def users():
    return make_users()


@pytest.fixture
def directory(users):
    return InMemoryUserDirectory(users)


@pytest.fixture
def templates():
    return InMemoryTemplateStore(make_templates())
