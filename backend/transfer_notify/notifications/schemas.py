# backend/transfer_notify/notifications/schemas.py

"""
通知ルールエンジンの共通スキーマ定義。

- ドメインイベント（振替申請・承認・輸送中・納車・キャンセル・コメント・車両更新）
- 通知ルール（条件・受信者設定・チャンネル設定）
- 通知テンプレート
- 配信結果レポート（DispatchReport）

ルール・テンプレートは管理画面（外部）で編集・永続化される前提で、
このパッケージは評価時点のスナップショットを読み取るだけとする。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """
    通知ルールを束縛できるドメインイベントの種別。
    """

    TRANSFER_REQUESTED = "transfer_requested"
    TRANSFER_APPROVED = "transfer_approved"
    TRANSFER_IN_TRANSIT = "transfer_in_transit"
    TRANSFER_DELIVERED = "transfer_delivered"
    TRANSFER_CANCELLED = "transfer_cancelled"
    COMMENT_ADDED = "comment_added"
    VEHICLE_UPDATED = "vehicle_updated"

    @property
    def is_transfer(self) -> bool:
        return self.value.startswith("transfer_")


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class ConditionLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class NotificationChannel(str, Enum):
    """
    物理的な配信チャンネル。
    """

    EMAIL = "email"
    SMS = "sms"


class ChannelPriority(str, Enum):
    """
    チャンネルの送信順序とフォールバック方針。

    - EMAIL_FIRST / SMS_FIRST: 一次チャンネルが失敗した場合のみ二次チャンネルを試す
    - BOTH: 両チャンネルを独立に送信する
    - EMAIL_ONLY / SMS_ONLY: 指定チャンネルのみ送信する
    """

    EMAIL_FIRST = "email_first"
    SMS_FIRST = "sms_first"
    BOTH = "both"
    EMAIL_ONLY = "email_only"
    SMS_ONLY = "sms_only"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    TRANSPORT = "transport"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    # デッドライン超過などで結果が確定しなかったもの
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# イベント
# ---------------------------------------------------------------------------


class NotificationEvent(BaseModel):
    """
    ルール評価の入力となるドメインイベント（イミュータブル）。

    payload はイベント種別ごとに異なる疎なネスト辞書。
    例（振替イベント）::

        {
            "vehicle": {"id": "v1", "location_id": "L1", "make": "Toyota"},
            "transfer": {
                "id": "t1",
                "from_location_id": "L1",
                "to_location_id": "L2",
                "priority": "urgent",
                "customer_waiting": True,
                "requested_by": {"id": "u9", "name": "Jane", "email": "jane@dealer.com"},
            },
        }
    """

    model_config = ConfigDict(frozen=True)

    event_type: EventType = Field(..., description="イベント種別。")
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="イベント種別ごとのペイロード（ネスト辞書）。",
    )
    event_id: Optional[str] = Field(None, description="監査用のイベント ID（任意）。")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="イベント発生時刻（UTC）。",
    )


# ---------------------------------------------------------------------------
# ルール
# ---------------------------------------------------------------------------


class RuleCondition(BaseModel):
    field: str = Field(..., description="評価対象フィールド（ドット区切りパス or エイリアス）。")
    operator: ConditionOperator
    value: str = ""


class RecipientConfig(BaseModel):
    """
    受信者設定。

    3 つのロケーションバケットは「イベントの車両」から見た相対位置:
    - current_location: 車両が現在置かれている店舗
    - requesting_location: 振替元（transfer.from_location_id）
    - destination_location: 振替先（transfer.to_location_id）

    use_conditions はバケットで選ばれたユーザーを、ルール条件を個別に満たす
    ユーザーだけに絞り込むフラグ（バケット選択を置き換えるものではない）。
    """

    use_conditions: bool = False
    current_location: List[Role] = Field(default_factory=list)
    requesting_location: List[Role] = Field(default_factory=list)
    destination_location: List[Role] = Field(default_factory=list)
    specific_users: List[str] = Field(default_factory=list)
    additional_emails: List[str] = Field(default_factory=list)
    additional_phones: List[str] = Field(default_factory=list)


class ChannelConfig(BaseModel):
    enabled: bool = False
    template_id: str = ""


class RuleChannels(BaseModel):
    email: ChannelConfig = Field(default_factory=ChannelConfig)
    sms: ChannelConfig = Field(default_factory=ChannelConfig)
    priority: ChannelPriority = ChannelPriority.BOTH

    def get(self, channel: NotificationChannel) -> ChannelConfig:
        return self.email if channel == NotificationChannel.EMAIL else self.sms

    def dispatchable_channels(self) -> List[NotificationChannel]:
        """
        priority と enabled フラグの両方を考慮して、送信対象となるチャンネルを返す。
        """
        if self.priority == ChannelPriority.EMAIL_ONLY:
            candidates = [NotificationChannel.EMAIL]
        elif self.priority == ChannelPriority.SMS_ONLY:
            candidates = [NotificationChannel.SMS]
        else:
            candidates = [NotificationChannel.EMAIL, NotificationChannel.SMS]
        return [ch for ch in candidates if self.get(ch).enabled]


class NotificationRule(BaseModel):
    """
    通知ルール 1 件分。

    - 条件が 0 件のルールは常にマッチする（設定された受信者全員に送信）
    - 有効化には少なくとも 1 チャンネルが enabled で、template_id を持つ必要がある
      （validation.validate_rule で保存時に検査する）
    """

    id: str
    name: str
    description: str = ""
    active: bool = True
    event: EventType
    conditions: List[RuleCondition] = Field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    recipients: RecipientConfig = Field(default_factory=RecipientConfig)
    channels: RuleChannels = Field(default_factory=RuleChannels)


# ---------------------------------------------------------------------------
# テンプレート
# ---------------------------------------------------------------------------


class EmailTemplateContent(BaseModel):
    subject_template: str = ""
    body_template: str = ""
    html_template: Optional[str] = Field(
        None,
        description="HTML 本文テンプレート。未設定ならテキスト本文のみ送信する。",
    )


class SmsTemplateContent(BaseModel):
    body_template: str = ""


class TemplateChannels(BaseModel):
    email: Optional[EmailTemplateContent] = None
    sms: Optional[SmsTemplateContent] = None


class NotificationTemplate(BaseModel):
    """
    チャンネルごとの本文テンプレート。ルールからは template_id で参照される。
    """

    id: str
    name: str
    description: str = ""
    channels: TemplateChannels = Field(default_factory=TemplateChannels)
    active: bool = True

    def has_channel(self, channel: NotificationChannel) -> bool:
        if channel == NotificationChannel.EMAIL:
            return self.channels.email is not None
        return self.channels.sms is not None


class RenderedContent(BaseModel):
    """
    テンプレートを展開した結果。SMS の場合 subject / html は None。
    """

    model_config = ConfigDict(frozen=True)

    channel: NotificationChannel
    subject: Optional[str] = None
    body: str = ""
    html: Optional[str] = None


# ---------------------------------------------------------------------------
# ユーザーディレクトリ
# ---------------------------------------------------------------------------


class DirectoryUser(BaseModel):
    """
    ユーザーディレクトリ（外部）から取得するユーザー情報。
    """

    id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[Role] = None
    location_id: Optional[str] = None
    active: bool = True

    def as_context(self) -> Dict[str, Any]:
        """
        条件評価・テンプレート展開で `user.*` として参照される辞書を返す。
        """
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role.value if self.role is not None else None,
            "location_id": self.location_id,
        }


# ---------------------------------------------------------------------------
# 結果
# ---------------------------------------------------------------------------


class RecipientSource(BaseModel):
    """
    どの設定項目からどのアドレスが解決されたかの内訳（ドライラン表示用）。
    """

    source: str
    description: str = ""
    addresses: List[str] = Field(default_factory=list)


class DispatchReportEntry(BaseModel):
    event_type: EventType
    rule_id: str
    rule_ids: List[str] = Field(
        default_factory=list,
        description="ルール間重複排除でまとめられた全ルール ID。",
    )
    channel: NotificationChannel
    address: str
    status: DeliveryStatus
    reason: Optional[str] = None
    fallback_from: Optional[NotificationChannel] = Field(
        None,
        description="フォールバック送信の場合、先に失敗した一次チャンネル。",
    )
    attempts: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DispatchReport(BaseModel):
    """
    handle(event) の戻り値。受信者×チャンネルごとの結果一覧と集計値。
    """

    event_type: EventType
    event_id: Optional[str] = None
    matched_rule_ids: List[str] = Field(default_factory=list)
    entries: List[DispatchReportEntry] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return self._count(DeliveryStatus.SENT)

    @property
    def failed_count(self) -> int:
        return self._count(DeliveryStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(DeliveryStatus.SKIPPED)

    @property
    def unknown_count(self) -> int:
        return self._count(DeliveryStatus.UNKNOWN)

    def _count(self, status: DeliveryStatus) -> int:
        return sum(1 for e in self.entries if e.status == status)

    def summary(self) -> Dict[str, int]:
        return {
            "sent": self.sent_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "unknown": self.unknown_count,
        }


class DryRunResult(BaseModel):
    """
    ルールのドライラン結果。配信は一切行わない。
    """

    rule_id: str
    event_type: EventType
    conditions_met: bool
    recipients: List[str] = Field(default_factory=list)
    recipient_count: int = 0
    would_dispatch: bool = False
    channels: List[NotificationChannel] = Field(default_factory=list)
    details: List[RecipientSource] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HTTP API 用
# ---------------------------------------------------------------------------


class DispatchReportResponse(BaseModel):
    """
    POST /notifications/events のレスポンス。
    """

    report: DispatchReport
    summary: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: DispatchReport) -> "DispatchReportResponse":
        return cls(report=report, summary=report.summary())


class RuleTestRequest(BaseModel):
    """
    ルールのドライラン用サンプルイベント。イベント種別はルール側の値を使う。
    """

    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class RuleValidationResponse(BaseModel):
    valid: bool
    issues: List[str] = Field(default_factory=list)


class TemplatePreviewRequest(BaseModel):
    event_type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None
    recipient: Optional[DirectoryUser] = Field(
        None,
        description="user.* 変数の展開に使うサンプル受信者（任意）。",
    )


class TemplatePreviewResponse(BaseModel):
    template_id: str
    rendered: Dict[str, RenderedContent] = Field(
        default_factory=dict,
        description="チャンネル名（email / sms）-> 展開結果。",
    )
