# backend/transfer_notify/notifications/fields.py

"""
イベント種別ごとの参照可能フィールド（フィールドレジストリ）と、
ペイロードからの値取得ヘルパー。

ルール保存時のバリデータ（validation.py）と実行時の評価器（evaluator.py）、
テンプレート展開（templates.py）が同じレジストリを参照するため、
フィールド定義がずれることはない。
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from .schemas import EventType

FIELD_REGISTRY_VERSION = 1

# 値が存在しないことを表す番兵（None とは区別する）
MISSING: Any = object()

# 受信者（ユーザー）属性。use_conditions 有効時に候補ユーザーごとに評価される。
USER_FIELDS: FrozenSet[str] = frozenset(
    {
        "user.role",
        "user.location_id",
        "user.email",
    }
)

VEHICLE_FIELDS: FrozenSet[str] = frozenset(
    {
        "vehicle.location_id",
        "vehicle.price",
        "vehicle.year",
        "vehicle.make",
        "vehicle.model",
        "vehicle.status",
        "vehicle.stock_number",
    }
)

TRANSFER_FIELDS: FrozenSet[str] = frozenset(
    {
        "transfer.status",
        "transfer.priority",
        "transfer.customer_waiting",
        "transfer.from_location_id",
        "transfer.to_location_id",
        "transfer.requested_by.email",
        "transfer.requested_by.role",
    }
)

COMMENT_FIELDS: FrozenSet[str] = frozenset(
    {
        "comment.author.email",
        "comment.author.role",
        "comment.text",
    }
)

CHANGE_FIELDS: FrozenSet[str] = frozenset(
    {
        "changes.fields",
    }
)

EVENT_FIELDS: Dict[EventType, FrozenSet[str]] = {
    EventType.TRANSFER_REQUESTED: USER_FIELDS | VEHICLE_FIELDS | TRANSFER_FIELDS,
    EventType.TRANSFER_APPROVED: USER_FIELDS | VEHICLE_FIELDS | TRANSFER_FIELDS,
    EventType.TRANSFER_IN_TRANSIT: USER_FIELDS | VEHICLE_FIELDS | TRANSFER_FIELDS,
    EventType.TRANSFER_DELIVERED: USER_FIELDS | VEHICLE_FIELDS | TRANSFER_FIELDS,
    EventType.TRANSFER_CANCELLED: USER_FIELDS | VEHICLE_FIELDS | TRANSFER_FIELDS,
    EventType.COMMENT_ADDED: USER_FIELDS | VEHICLE_FIELDS | COMMENT_FIELDS,
    EventType.VEHICLE_UPDATED: USER_FIELDS | VEHICLE_FIELDS | CHANGE_FIELDS,
}

# ルールエディタで使われてきた短縮名 -> 正規のドット区切りパス
FIELD_ALIASES: Dict[str, str] = {
    "priority": "transfer.priority",
    "customerWaiting": "transfer.customer_waiting",
    "status": "transfer.status",
    "fromLocation": "transfer.from_location_id",
    "toLocation": "transfer.to_location_id",
    "requestedBy": "transfer.requested_by.email",
    "vehicleLocation": "vehicle.location_id",
}


def canonical_field(name: str) -> str:
    """
    エイリアスを正規のパスに変換する。未知の名前はそのまま返す。
    """
    name = name.strip()
    return FIELD_ALIASES.get(name, name)


def fields_for(event_type: EventType) -> FrozenSet[str]:
    return EVENT_FIELDS.get(event_type, frozenset())


def is_known_field(event_type: EventType, name: str) -> bool:
    return canonical_field(name) in fields_for(event_type)


def is_user_field(name: str) -> bool:
    return canonical_field(name).startswith("user.")


def list_fields(event_type: EventType) -> List[Dict[str, str]]:
    """
    ルールエディタ向けに、フィールド名と分類を返す。
    """
    items: List[Dict[str, str]] = []
    for name in sorted(fields_for(event_type)):
        items.append({"field": name, "scope": "user" if is_user_field(name) else "event"})
    return items


def get_nested_value(data: Mapping[str, Any], path: str) -> Any:
    """
    ドット区切りパスでネスト辞書から値を取り出す。途中で見つからなければ MISSING。
    """
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def get_field_value(data: Mapping[str, Any], name: str) -> Any:
    """
    エイリアス解決込みで値を取得する。None も「存在しない」とみなす。
    """
    value = get_nested_value(data, canonical_field(name))
    if value is None:
        return MISSING
    return value


def stringify(value: Any) -> str:
    """
    比較・テンプレート展開用に値を文字列化する。

    - bool は "true" / "false"
    - 整数値の float は小数点なし
    - リストはカンマ区切り
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(stringify(v) for v in value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        # str Enum
        return value.value
    return str(value)


def build_context(
    payload: Mapping[str, Any],
    user: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    イベントペイロードに受信者コンテキスト（user.*）を重ねた評価用辞書を作る。
    """
    context: Dict[str, Any] = dict(payload)
    if user is not None:
        context["user"] = dict(user)
    else:
        # ペイロード側の user は受信者属性として扱わない
        context.pop("user", None)
    return context
