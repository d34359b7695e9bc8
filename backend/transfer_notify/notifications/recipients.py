# backend/transfer_notify/notifications/recipients.py

"""
受信者解決ロジック。

RecipientConfig をイベントに対して展開し、チャンネル別（email / sms）に
重複排除された宛先一覧を作る。

処理順:
1. ロケーションバケット（現在地 / 振替元 / 振替先）ごとに対象店舗を決め、
   ユーザーディレクトリから該当ロールのアクティブユーザーを取得する
2. use_conditions が有効なら、候補ユーザーごとにルール条件を再評価して絞り込む
3. specific_users / additional_emails / additional_phones を合流させる
   （use_conditions かつ OR のルールでは、これらの候補にも条件を再評価する）
4. 正規化したアドレス（メールは小文字、電話は E.164）で重複排除する

ディレクトリ問い合わせの失敗はそのバケットだけ空として扱い、処理は続ける。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from . import fields
from .evaluator import ConditionEvaluator
from .schemas import (
    ConditionLogic,
    DirectoryUser,
    EventType,
    NotificationChannel,
    NotificationEvent,
    NotificationRule,
    RecipientConfig,
    RecipientSource,
    Role,
)
from .sources import UserDirectory

logger = logging.getLogger(__name__)

_E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


def normalize_email(address: Optional[str]) -> Optional[str]:
    """
    メールアドレスを小文字化・前後空白除去する。形式が不正なら None。
    """
    if not address:
        return None
    cleaned = address.strip().lower()
    if not _EMAIL_RE.match(cleaned):
        return None
    return cleaned


def clean_phone_number(phone: str) -> str:
    """
    電話番号から数字以外を取り除き、E.164 形式に寄せる。

    10 桁の番号は北米番号とみなして国番号 1 を補う。
    """
    cleaned = re.sub(r"\D", "", phone)
    if len(cleaned) == 10:
        cleaned = "1" + cleaned
    return "+" + cleaned


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    E.164 に正規化した番号を返す。正規化後も不正なら None。
    """
    if not phone:
        return None
    cleaned = clean_phone_number(phone)
    if not _E164_RE.match(cleaned):
        return None
    return cleaned


@dataclass
class Recipient:
    """
    解決済みの受信者 1 名分。

    key はフォールバック時に「同一受信者」を判定するための識別子で、
    ディレクトリユーザーなら user:<id>、直接指定のアドレスなら email:/sms: を付けた値。
    """

    key: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    user: Optional[DirectoryUser] = None

    def address_for(self, channel: NotificationChannel) -> Optional[str]:
        return self.email if channel == NotificationChannel.EMAIL else self.phone


@dataclass
class ResolvedRecipients:
    """
    受信者解決の結果。

    email / sms は正規化済みアドレスの集合。recipients は各アドレスの持ち主で、
    同じアドレスが複数の受信者に重複して現れることはない。
    """

    recipients: List[Recipient] = field(default_factory=list)
    details: List[RecipientSource] = field(default_factory=list)

    @property
    def email(self) -> Set[str]:
        return {r.email for r in self.recipients if r.email}

    @property
    def sms(self) -> Set[str]:
        return {r.phone for r in self.recipients if r.phone}

    def addresses(self, channel: NotificationChannel) -> Set[str]:
        return self.email if channel == NotificationChannel.EMAIL else self.sms

    def is_empty(self) -> bool:
        return not self.recipients


class _Collector:
    """
    チャンネル別にアドレスの所有者を管理しながら受信者を積み上げる内部ヘルパー。
    """

    def __init__(self) -> None:
        self._recipients: Dict[str, Recipient] = {}
        self._email_owner: Dict[str, str] = {}
        self._phone_owner: Dict[str, str] = {}
        self.details: List[RecipientSource] = []

    def add(
        self,
        key: str,
        *,
        name: str = "",
        email: Optional[str] = None,
        phone: Optional[str] = None,
        user: Optional[DirectoryUser] = None,
    ) -> List[str]:
        """
        受信者を追加し、新たに追加されたアドレスのリストを返す。
        既に他の受信者が持っているアドレスは追加しない。
        """
        email_n = normalize_email(email)
        phone_n = normalize_phone(phone)
        if phone and phone_n is None:
            logger.debug("Dropping invalid phone number. key=%s", key)

        recipient = self._recipients.get(key)
        if recipient is None:
            recipient = Recipient(key=key, name=name, user=user)

        added: List[str] = []
        if email_n and email_n not in self._email_owner and recipient.email is None:
            recipient.email = email_n
            self._email_owner[email_n] = key
            added.append(email_n)
        if phone_n and phone_n not in self._phone_owner and recipient.phone is None:
            recipient.phone = phone_n
            self._phone_owner[phone_n] = key
            added.append(phone_n)

        if (recipient.email or recipient.phone) and key not in self._recipients:
            self._recipients[key] = recipient
        return added

    def add_detail(self, source: str, description: str, addresses: Sequence[str]) -> None:
        if addresses:
            self.details.append(
                RecipientSource(source=source, description=description, addresses=list(addresses))
            )

    def result(self) -> ResolvedRecipients:
        return ResolvedRecipients(recipients=list(self._recipients.values()), details=self.details)


def _location_buckets(
    config: RecipientConfig,
    event: NotificationEvent,
) -> List[Tuple[str, Optional[str], List[Role]]]:
    """
    (バケット名, 店舗 ID, ロール一覧) のリストを返す。

    振替元 / 振替先バケットは振替イベントでのみ意味を持つ。
    """
    payload = event.payload
    vehicle_location = fields.get_nested_value(payload, "vehicle.location_id")
    buckets: List[Tuple[str, Optional[str], List[Role]]] = [
        (
            "current_location",
            None if vehicle_location in (fields.MISSING, None) else fields.stringify(vehicle_location),
            list(config.current_location),
        ),
    ]

    if event.event_type.is_transfer:
        for name, path, roles in (
            ("requesting_location", "transfer.from_location_id", config.requesting_location),
            ("destination_location", "transfer.to_location_id", config.destination_location),
        ):
            value = fields.get_nested_value(payload, path)
            location_id = None if value in (fields.MISSING, None) else fields.stringify(value)
            buckets.append((name, location_id, list(roles)))
    elif config.requesting_location or config.destination_location:
        logger.debug(
            "Transfer location buckets ignored for non-transfer event. event_type=%s",
            event.event_type.value,
        )

    return buckets


class RecipientResolver:
    """
    RecipientConfig を宛先集合に展開するサービス。

    directory は usersAt / resolveUser を提供する外部コラボレーター。
    """

    def __init__(
        self,
        directory: UserDirectory,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self._directory = directory
        self._evaluator = evaluator or ConditionEvaluator()

    def resolve(
        self,
        config: RecipientConfig,
        event: NotificationEvent,
        rule: Optional[NotificationRule] = None,
    ) -> ResolvedRecipients:
        """
        受信者設定をイベントに対して解決する。

        rule は use_conditions 有効時の候補ごとの再評価に使う。
        省略された場合、use_conditions による絞り込みは行わない。
        """
        collector = _Collector()

        # 1-2. ロケーションバケット
        for bucket, location_id, roles in _location_buckets(config, event):
            if not roles or not location_id:
                continue

            users = self._users_at(bucket, location_id, roles)
            if config.use_conditions and rule is not None:
                users = [u for u in users if self._evaluator.evaluate(rule, event, u.as_context())]

            added: List[str] = []
            for user in users:
                added.extend(
                    collector.add(
                        f"user:{user.id}",
                        name=user.name,
                        email=user.email,
                        phone=user.phone,
                        user=user,
                    )
                )
            collector.add_detail(bucket, f"{bucket} ({location_id})", added)

        # 3. 個別指定ユーザー
        added = []
        for user_id in config.specific_users:
            user = self._resolve_user(user_id)
            if user is None or not user.active:
                continue
            if not self._admits(config, event, rule, user):
                continue
            added.extend(
                collector.add(
                    f"user:{user.id}",
                    name=user.name,
                    email=user.email,
                    phone=user.phone,
                    user=user,
                )
            )
        collector.add_detail("specific_users", "Specific users", added)

        # 追加のメールアドレス / 電話番号（ユーザー属性を持たない候補として判定）
        literals_admitted = self._admits(config, event, rule, None)
        additional_emails = config.additional_emails if literals_admitted else []
        additional_phones = config.additional_phones if literals_admitted else []

        added = []
        for address in additional_emails:
            normalized = normalize_email(address)
            if normalized is None:
                logger.debug("Dropping invalid additional email.")
                continue
            added.extend(collector.add(f"email:{normalized}", email=normalized))
        collector.add_detail("additional_emails", "Additional emails", added)

        added = []
        for phone in additional_phones:
            normalized = normalize_phone(phone)
            if normalized is None:
                logger.debug("Dropping invalid additional phone.")
                continue
            added.extend(collector.add(f"sms:{normalized}", phone=normalized))
        collector.add_detail("additional_phones", "Additional phones", added)

        # 承認イベントでは申請者に必ず通知する
        if event.event_type == EventType.TRANSFER_APPROVED:
            self._add_requester(collector, event, config, rule)

        return collector.result()

    # ---- 内部ヘルパー -------------------------------------------------

    def _admits(
        self,
        config: RecipientConfig,
        event: NotificationEvent,
        rule: Optional[NotificationRule],
        user: Optional[DirectoryUser],
    ) -> bool:
        """
        バケット以外の候補（個別指定・直接アドレス・申請者）を通すかどうか。

        OR 条件のルールではゲート通過がユーザー条件頼みの場合があるため、
        候補ごとに evaluate() を通す。イベント条件が成立していれば OR なので常に True。
        """
        if not config.use_conditions or rule is None or rule.condition_logic != ConditionLogic.OR:
            return True
        return self._evaluator.evaluate(rule, event, user.as_context() if user is not None else None)

    def _users_at(self, bucket: str, location_id: str, roles: List[Role]) -> List[DirectoryUser]:
        try:
            users = self._directory.users_at(location_id, roles)
        except Exception as exc:  # noqa: BLE001 - 1 バケットの失敗でイベント全体を止めない
            logger.warning(
                "Directory lookup failed; bucket treated as empty. bucket=%s location_id=%s error=%s",
                bucket,
                location_id,
                exc,
            )
            return []
        return [u for u in users if u.active]

    def _resolve_user(self, user_id: str) -> Optional[DirectoryUser]:
        try:
            return self._directory.resolve_user(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("User lookup failed. user_id=%s error=%s", user_id, exc)
            return None

    def _add_requester(
        self,
        collector: _Collector,
        event: NotificationEvent,
        config: RecipientConfig,
        rule: Optional[NotificationRule],
    ) -> None:
        requester = fields.get_nested_value(event.payload, "transfer.requested_by")
        if not isinstance(requester, Mapping) or not requester.get("email"):
            return

        name = str(requester.get("name") or "")
        user: Optional[DirectoryUser] = None
        if requester.get("id"):
            key = f"user:{requester['id']}"
            user = DirectoryUser(id=str(requester["id"]), name=name, email=requester["email"])
        else:
            key = f"email:{normalize_email(requester['email']) or requester['email']}"
        if not self._admits(config, event, rule, user):
            return
        added = collector.add(key, name=name, email=requester["email"], user=user)
        collector.add_detail("requester", "Transfer requester", added)
