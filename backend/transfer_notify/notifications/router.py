# backend/transfer_notify/notifications/router.py

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, status

from . import fields
from .engine import RuleEngine, TemplateNotFoundError
from .factory import get_rule_engine
from .schemas import (
    DispatchReportResponse,
    DryRunResult,
    EventType,
    NotificationEvent,
    NotificationRule,
    RuleTestRequest,
    RuleValidationResponse,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
)
from .templates import template_variables
from .validation import NotificationConfigError, parse_event, validate_rule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _sample_event(event_type: EventType, body: Any) -> NotificationEvent:
    data: Dict[str, Any] = {"event_type": event_type, "payload": body.payload}
    if body.occurred_at is not None:
        data["occurred_at"] = body.occurred_at
    return NotificationEvent.model_validate(data)


@router.post(
    "/events",
    response_model=DispatchReportResponse,
    summary="ドメインイベントを受け取り通知ルールを実行",
)
def post_event(
    body: Dict[str, Any] = Body(...),
    engine: RuleEngine = Depends(get_rule_engine),
) -> DispatchReportResponse:
    """
    イベント 1 件に対してマッチするルールを評価し、通知を配信する。

    - 未知のイベント種別・不正なイベント → 400 Bad Request
    - 配信失敗はレスポンスのレポートに含まれる（HTTP エラーにはしない）
    - 想定外の内部エラー → 500 Internal Server Error
    """
    try:
        event = parse_event(body)
    except NotificationConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        report = engine.handle(event)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to handle notification event. event_type=%s", event.event_type.value)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error while handling notification event.",
        ) from exc

    return DispatchReportResponse.from_report(report)


@router.post(
    "/rules/{rule_id}/test",
    response_model=DryRunResult,
    summary="保存済みルールのドライラン",
)
def post_rule_test(
    rule_id: str,
    body: RuleTestRequest,
    engine: RuleEngine = Depends(get_rule_engine),
) -> DryRunResult:
    """
    サンプルペイロードに対して条件評価と受信者解決だけを行う。送信はしない。
    """
    rule = engine.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Rule '{rule_id}' not found.")

    try:
        return engine.test(rule, _sample_event(rule.event, body))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to test notification rule. rule_id=%s", rule_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error while testing rule.",
        ) from exc


@router.post(
    "/rules/validate",
    response_model=RuleValidationResponse,
    summary="ルール設定の検証",
)
def post_rule_validate(
    rule: NotificationRule,
    engine: RuleEngine = Depends(get_rule_engine),
) -> RuleValidationResponse:
    issues = validate_rule(rule, engine.template_source)
    return RuleValidationResponse(valid=not issues, issues=issues)


@router.post(
    "/templates/{template_id}/preview",
    response_model=TemplatePreviewResponse,
    summary="テンプレートのプレビュー",
)
def post_template_preview(
    template_id: str,
    body: TemplatePreviewRequest,
    engine: RuleEngine = Depends(get_rule_engine),
) -> TemplatePreviewResponse:
    try:
        rendered = engine.preview(
            template_id,
            _sample_event(body.event_type, body),
            body.recipient,
        )
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return TemplatePreviewResponse(
        template_id=template_id,
        rendered={channel.value: content for channel, content in rendered.items()},
    )


@router.get("/fields/{event_type}", summary="ルール条件で使えるフィールド一覧")
def get_fields(event_type: EventType) -> Dict[str, Any]:
    return {
        "event_type": event_type.value,
        "version": fields.FIELD_REGISTRY_VERSION,
        "fields": fields.list_fields(event_type),
    }


@router.get("/template-variables", summary="テンプレート変数の一覧")
def get_template_variables() -> Dict[str, List[Dict[str, str]]]:
    return template_variables()
