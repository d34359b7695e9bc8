# backend/transfer_notify/notifications/sources.py

"""
ルール・テンプレート・ユーザーディレクトリの読み取りインターフェース。

永続化そのものは外部（RDB / KVS）の責務。ここではエンジンが必要とする
読み取り専用の口だけを Protocol として定義し、開発・テスト用の
インメモリ実装を用意する。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .schemas import DirectoryUser, EventType, NotificationRule, NotificationTemplate, Role

logger = logging.getLogger(__name__)


class RuleSource(Protocol):
    def load_active_rules(self, event_type: EventType) -> List[NotificationRule]:  # pragma: no cover - Protocol
        ...

    def load_rule(self, rule_id: str) -> Optional[NotificationRule]:  # pragma: no cover - Protocol
        ...


class TemplateSource(Protocol):
    def load_template(self, template_id: str) -> Optional[NotificationTemplate]:  # pragma: no cover - Protocol
        ...


class UserDirectory(Protocol):
    """
    ユーザーディレクトリ（認証・組織管理側）への問い合わせ口。
    """

    def users_at(self, location_id: str, roles: Sequence[Role]) -> List[DirectoryUser]:  # pragma: no cover - Protocol
        ...

    def resolve_user(self, user_id: str) -> Optional[DirectoryUser]:  # pragma: no cover - Protocol
        ...


class InMemoryRuleStore:
    """
    ルールを登録順に保持するストア。
    """

    def __init__(self, rules: Iterable[NotificationRule] = ()) -> None:
        self._rules: Dict[str, NotificationRule] = {}
        for rule in rules:
            self.save(rule)

    def save(self, rule: NotificationRule) -> None:
        self._rules[rule.id] = rule

    def delete(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    def load_rule(self, rule_id: str) -> Optional[NotificationRule]:
        return self._rules.get(rule_id)

    def load_active_rules(self, event_type: EventType) -> List[NotificationRule]:
        return [r for r in self._rules.values() if r.active and r.event == event_type]


class InMemoryTemplateStore:
    def __init__(self, templates: Iterable[NotificationTemplate] = ()) -> None:
        self._templates: Dict[str, NotificationTemplate] = {t.id: t for t in templates}

    def save(self, template: NotificationTemplate) -> None:
        self._templates[template.id] = template

    def load_template(self, template_id: str) -> Optional[NotificationTemplate]:
        return self._templates.get(template_id)


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[DirectoryUser] = ()) -> None:
        self._users: Dict[str, DirectoryUser] = {u.id: u for u in users}

    def save(self, user: DirectoryUser) -> None:
        self._users[user.id] = user

    def users_at(self, location_id: str, roles: Sequence[Role]) -> List[DirectoryUser]:
        wanted = set(roles)
        return [
            u
            for u in self._users.values()
            if u.active and u.location_id == location_id and u.role in wanted
        ]

    def resolve_user(self, user_id: str) -> Optional[DirectoryUser]:
        return self._users.get(user_id)


def load_seed_file(
    path: str | Path,
) -> tuple[InMemoryRuleStore, InMemoryTemplateStore, InMemoryUserDirectory]:
    """
    開発用の JSON シードファイルからインメモリストアを構築する。

    形式::

        {"rules": [...], "templates": [...], "users": [...]}
    """
    raw: Dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))

    rules = [NotificationRule.model_validate(r) for r in raw.get("rules", [])]
    templates = [NotificationTemplate.model_validate(t) for t in raw.get("templates", [])]
    users = [DirectoryUser.model_validate(u) for u in raw.get("users", [])]

    logger.info(
        "Loaded notification seed file. path=%s rules=%d templates=%d users=%d",
        path,
        len(rules),
        len(templates),
        len(users),
    )
    return (
        InMemoryRuleStore(rules),
        InMemoryTemplateStore(templates),
        InMemoryUserDirectory(users),
    )
