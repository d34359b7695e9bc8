# backend/transfer_notify/notifications/engine.py

"""
通知ルールエンジン本体（オーケストレータ）。

handle(event) の流れ:
1. イベント種別に束縛された active なルールを読み込む
2. ルールごとに条件を評価し、マッチしたルールだけ残す
3. マッチしたルールごとに受信者を解決し、有効なチャンネルのテンプレートを展開する
4. ルール間で (チャンネル, 宛先, 展開結果ハッシュ) が同一の配信をまとめる
5. ディスパッチャで送信し、結果を DispatchReport に集約して返す

通知の失敗でイベント発生元の業務処理を止めないため、配信・解決の失敗は
例外にせずレポートとログに残す。リトライはディスパッチャの責務で、
このレイヤーでは行わない。
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .audit import AuditSink, LoggingAuditSink
from .dispatcher import ChannelDispatcher, DeliveryTask, DispatchItem, ItemKey, Outcome
from .evaluator import ConditionEvaluator
from .recipients import RecipientResolver, ResolvedRecipients
from .schemas import (
    DeliveryStatus,
    DirectoryUser,
    DispatchReport,
    DispatchReportEntry,
    DryRunResult,
    NotificationChannel,
    NotificationEvent,
    NotificationRule,
    NotificationTemplate,
    RenderedContent,
)
from .sources import RuleSource, TemplateSource, UserDirectory
from .templates import TemplateRenderer
from .validation import parse_event

logger = logging.getLogger(__name__)


class TemplateNotFoundError(LookupError):
    """テンプレートが存在しない場合の例外（プレビュー用）。"""


class _DeliveryIndex:
    """
    1 イベント分のルール間重複排除の索引。

    sends は必ず試行される配信、fallbacks はフォールバックとして
    予定されている配信（所属タスクと組で保持する）。
    """

    def __init__(self) -> None:
        self.sends: Dict[ItemKey, DispatchItem] = {}
        self.fallbacks: Dict[ItemKey, List[Tuple[DeliveryTask, DispatchItem]]] = {}


class RuleEngine:
    """
    ルール評価から配信までをまとめるサービス。

    すべての外部コラボレーター（ルール / テンプレートの読み取り口、
    ユーザーディレクトリ、配信プロバイダを持つディスパッチャ）は
    コンストラクタで注入する。
    """

    def __init__(
        self,
        rule_source: RuleSource,
        template_source: TemplateSource,
        directory: UserDirectory,
        dispatcher: ChannelDispatcher,
        *,
        renderer: Optional[TemplateRenderer] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        audit_sink: Optional[AuditSink] = None,
        deadline_seconds: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules = rule_source
        self._templates = template_source
        self._evaluator = evaluator or ConditionEvaluator()
        self._resolver = RecipientResolver(directory, self._evaluator)
        self._dispatcher = dispatcher
        self._renderer = renderer or TemplateRenderer()
        self._audit_sink = audit_sink or LoggingAuditSink()
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    # ---- 公開 API ------------------------------------------------------

    def handle(
        self,
        event: Union[NotificationEvent, Mapping[str, Any]],
        *,
        deadline_seconds: Optional[float] = None,
    ) -> DispatchReport:
        """
        イベント 1 件を処理して DispatchReport を返す。

        未知のイベント種別は NotificationConfigError（validation.parse_event）。
        deadline_seconds を省略した場合はコンストラクタの値を使う。
        """
        started = self._clock()
        if not isinstance(event, NotificationEvent):
            event = parse_event(event)
        deadline = self._deadline_seconds if deadline_seconds is None else deadline_seconds

        report = DispatchReport(event_type=event.event_type, event_id=event.event_id)

        rules = self._load_rules(event)
        if not rules:
            logger.info("No active notification rules. event_type=%s", event.event_type.value)
            self._record_audit(report)
            return report

        tasks: List[DeliveryTask] = []
        index = _DeliveryIndex()
        template_cache: Dict[str, Tuple[Optional[NotificationTemplate], Optional[str]]] = {}

        for rule in rules:
            try:
                if not self._evaluator.evaluate_gate(rule, event):
                    logger.debug("Rule conditions not met. rule_id=%s", rule.id)
                    continue

                resolved = self._resolver.resolve(rule.recipients, event, rule)
                if resolved.is_empty() and self._evaluator.gate_depends_on_user(rule, event):
                    logger.debug("Rule conditions not met by any candidate. rule_id=%s", rule.id)
                    continue
                report.matched_rule_ids.append(rule.id)

                if resolved.is_empty():
                    logger.info("Rule matched but no recipients resolved. rule_id=%s", rule.id)
                    continue

                items, skipped = self._build_items(rule, event, resolved, template_cache)
                report.entries.extend(skipped)
                rule_tasks = self._dispatcher.plan(items, rule.channels.priority)
                tasks.extend(self._merge_tasks(rule_tasks, index))
            except Exception:  # noqa: BLE001 - 1 ルールの失敗で他のルールを止めない
                logger.exception("Failed to process notification rule. rule_id=%s", rule.id)

        timeout: Optional[float] = None
        if deadline is not None:
            timeout = deadline - (self._clock() - started)

        outcomes = self._dispatcher.run(tasks, timeout=timeout)
        report.entries.extend(self._to_entry(event, o) for o in outcomes)

        logger.info(
            "Notification event handled. event_type=%s matched_rules=%d summary=%s",
            event.event_type.value,
            len(report.matched_rule_ids),
            report.summary(),
        )
        self._record_audit(report)
        return report

    def test(self, rule: NotificationRule, sample_event: NotificationEvent) -> DryRunResult:
        """
        ルールのドライラン。条件評価と受信者解決だけを行い、配信はしない。
        """
        conditions_met = self._evaluator.evaluate_gate(rule, sample_event)
        resolved = (
            self._resolver.resolve(rule.recipients, sample_event, rule)
            if conditions_met
            else ResolvedRecipients()
        )
        if resolved.is_empty() and self._evaluator.gate_depends_on_user(rule, sample_event):
            conditions_met = False

        channels = rule.channels.dispatchable_channels()
        recipients = sorted(resolved.email) + sorted(resolved.sms)
        would_dispatch = conditions_met and any(resolved.addresses(ch) for ch in channels)

        return DryRunResult(
            rule_id=rule.id,
            event_type=sample_event.event_type,
            conditions_met=conditions_met,
            recipients=recipients,
            recipient_count=len(recipients),
            would_dispatch=would_dispatch,
            channels=channels,
            details=list(resolved.details),
        )

    def get_rule(self, rule_id: str) -> Optional[NotificationRule]:
        return self._rules.load_rule(rule_id)

    @property
    def template_source(self) -> TemplateSource:
        return self._templates

    @property
    def audit_sink(self) -> AuditSink:
        return self._audit_sink

    def preview(
        self,
        template_id: str,
        sample_event: NotificationEvent,
        recipient: Optional[DirectoryUser] = None,
    ) -> Dict[NotificationChannel, RenderedContent]:
        """
        保存済みテンプレートをサンプルイベントで展開する（送信はしない）。
        """
        template = self._templates.load_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{template_id}' not found.")
        return self._renderer.render(template, sample_event, recipient)

    # ---- 内部ヘルパー -------------------------------------------------

    def _load_rules(self, event: NotificationEvent) -> List[NotificationRule]:
        try:
            rules = self._rules.load_active_rules(event.event_type)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load notification rules. event_type=%s", event.event_type.value)
            return []
        return [r for r in rules if r.active and r.event == event.event_type]

    def _load_template(
        self,
        template_id: str,
        channel: NotificationChannel,
        cache: Dict[str, Tuple[Optional[NotificationTemplate], Optional[str]]],
    ) -> Tuple[Optional[NotificationTemplate], Optional[str]]:
        """
        (テンプレート, 使えない理由) を返す。使える場合は理由 None。
        """
        if template_id not in cache:
            try:
                template = self._templates.load_template(template_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Template lookup failed. template_id=%s error=%s", template_id, exc)
                cache[template_id] = (None, "template lookup failed")
            else:
                if template is None:
                    cache[template_id] = (None, "template not found")
                elif not template.active:
                    cache[template_id] = (None, "template inactive")
                else:
                    cache[template_id] = (template, None)

        template, reason = cache[template_id]
        if template is not None and not template.has_channel(channel):
            return None, f"template has no {channel.value} content"
        return template, reason

    def _build_items(
        self,
        rule: NotificationRule,
        event: NotificationEvent,
        resolved: ResolvedRecipients,
        template_cache: Dict[str, Tuple[Optional[NotificationTemplate], Optional[str]]],
    ) -> Tuple[List[DispatchItem], List[DispatchReportEntry]]:
        items: List[DispatchItem] = []
        skipped: List[DispatchReportEntry] = []

        for channel in rule.channels.dispatchable_channels():
            targets = [r for r in resolved.recipients if r.address_for(channel)]
            if not targets:
                continue

            template_id = rule.channels.get(channel).template_id
            template, reason = self._load_template(template_id, channel, template_cache)
            if template is None:
                logger.warning(
                    "Channel skipped; template unavailable. rule_id=%s channel=%s template_id=%s reason=%s",
                    rule.id,
                    channel.value,
                    template_id,
                    reason,
                )
                for recipient in targets:
                    skipped.append(
                        DispatchReportEntry(
                            event_type=event.event_type,
                            rule_id=rule.id,
                            rule_ids=[rule.id],
                            channel=channel,
                            address=recipient.address_for(channel) or "",
                            status=DeliveryStatus.SKIPPED,
                            reason=reason,
                        )
                    )
                continue

            for recipient in targets:
                content = self._renderer.render_channel(template, channel, event, recipient.user)
                if content is None:
                    continue
                items.append(
                    DispatchItem(
                        channel=channel,
                        address=recipient.address_for(channel) or "",
                        content=content,
                        recipient_key=recipient.key,
                        rule_id=rule.id,
                    )
                )

        return items, skipped

    @staticmethod
    def _merge_tasks(tasks: List[DeliveryTask], index: _DeliveryIndex) -> List[DeliveryTask]:
        """
        ルール間重複排除。

        タスクの先頭アイテムは必ず試行される配信、2 番目以降はフォールバック
        （先頭が失敗したときだけ試行）として扱う。

        - 先頭アイテムが既に予定済みの配信と同じなら、タスクごと外して
          ルール ID を既存側に記録する（フォールバックも引き継がない）
        - 先頭アイテムが他タスクのフォールバックと同じなら、そのフォールバックを
          元のタスクから外し、こちらを必ず送る配信として登録する
        - フォールバックが既に予定済みの配信と同じならフォールバックから外す
        """
        kept: List[DeliveryTask] = []
        for task in tasks:
            if not task.items:
                continue
            first, rest = task.items[0], task.items[1:]

            existing = index.sends.get(first.key)
            if existing is not None:
                if first.rule_id not in existing.rule_ids:
                    existing.rule_ids.append(first.rule_id)
                continue

            for owner, secondary in index.fallbacks.pop(first.key, []):
                owner.items = [i for i in owner.items if i is not secondary]
                logger.debug(
                    "Fallback delivery replaced by unconditional send. rule_id=%s channel=%s",
                    secondary.rule_id,
                    secondary.channel.value,
                )
            index.sends[first.key] = first

            merged = DeliveryTask(items=[first], priority=task.priority)
            for item in rest:
                if item.key in index.sends:
                    continue
                merged.items.append(item)
                index.fallbacks.setdefault(item.key, []).append((merged, item))
            kept.append(merged)
        return kept

    @staticmethod
    def _to_entry(event: NotificationEvent, outcome: Outcome) -> DispatchReportEntry:
        item = outcome.item
        return DispatchReportEntry(
            event_type=event.event_type,
            rule_id=item.rule_id,
            rule_ids=list(item.rule_ids),
            channel=item.channel,
            address=item.address,
            status=outcome.status,
            reason=outcome.reason,
            fallback_from=outcome.fallback_from,
            attempts=outcome.attempts,
            timestamp=outcome.timestamp,
        )

    def _record_audit(self, report: DispatchReport) -> None:
        try:
            self._audit_sink.record(report)
        except Exception:  # noqa: BLE001 - 監査出力の失敗は呼び出し元に伝えない
            logger.exception("Audit sink failed. event_type=%s", report.event_type.value)
