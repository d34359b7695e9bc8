# backend/transfer_notify/notifications/dispatcher.py

"""
チャンネルディスパッチャ。

- 受信者×チャンネルの配信アイテムを「配信タスク」にまとめる（plan）
- タスクをワーカープールで並列実行する（run）
- 一時的失敗は指数バックオフでリトライし、恒久的失敗は即時記録する
- email_first / sms_first では一次チャンネルが失敗した場合のみ同じ受信者に
  二次チャンネルで送る（一次の完了を待ってから二次を試す）
- デッドラインを超えたタスクは放棄し、結果 unknown（timeout）として記録する

配信は「少なくとも 1 回は試行する」方針で、リトライ前のリクエストが実は
プロバイダ側で成功していた場合の重複はプロバイダ側の冪等性に委ねる。
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .providers import DeliveryProvider, PermanentDeliveryError, TransientDeliveryError
from .schemas import ChannelPriority, DeliveryStatus, NotificationChannel, RenderedContent
from .templates import content_hash

logger = logging.getLogger(__name__)

ItemKey = Tuple[NotificationChannel, str, str]


@dataclass(frozen=True)
class RetryPolicy:
    """
    一時的失敗に対するリトライ方針。max_attempts は初回を含む試行回数。
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be >= 0.")

    def delay_for(self, attempt: int) -> float:
        """attempt 回目の失敗後に待つ秒数。"""
        return self.backoff_base_seconds * (2 ** (attempt - 1))


@dataclass
class DispatchItem:
    """
    配信 1 件分（チャンネル・宛先・展開済みコンテンツ）。

    recipient_key はフォールバックのグルーピングに使う受信者識別子。
    rule_ids はルール間重複排除でまとめられたルール ID の一覧。
    """

    channel: NotificationChannel
    address: str
    content: RenderedContent
    recipient_key: str
    rule_id: str
    rule_ids: List[str] = field(default_factory=list)
    content_hash: str = field(init=False)

    def __post_init__(self) -> None:
        self.content_hash = content_hash(self.content)
        if not self.rule_ids:
            self.rule_ids = [self.rule_id]

    @property
    def key(self) -> ItemKey:
        return (self.channel, self.address, self.content_hash)


@dataclass
class DeliveryTask:
    """
    1 受信者分の配信手順。items は試行順（先頭が一次チャンネル）。

    フォールバックタスクでは、いずれかの送信が成功した時点で残りは試行しない。
    """

    items: List[DispatchItem]
    priority: ChannelPriority


@dataclass
class Outcome:
    item: DispatchItem
    status: DeliveryStatus
    reason: Optional[str] = None
    attempts: int = 0
    fallback_from: Optional[NotificationChannel] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _primary_channel(priority: ChannelPriority) -> Optional[NotificationChannel]:
    if priority == ChannelPriority.EMAIL_FIRST:
        return NotificationChannel.EMAIL
    if priority == ChannelPriority.SMS_FIRST:
        return NotificationChannel.SMS
    return None


def _only_channel(priority: ChannelPriority) -> Optional[NotificationChannel]:
    if priority == ChannelPriority.EMAIL_ONLY:
        return NotificationChannel.EMAIL
    if priority == ChannelPriority.SMS_ONLY:
        return NotificationChannel.SMS
    return None


class _TaskRun:
    """
    実行中タスクの進捗。ワーカースレッドと呼び出し元の両方から参照されるためロックで守る。
    """

    def __init__(self, task: DeliveryTask) -> None:
        self.task = task
        self._lock = threading.Lock()
        self._outcomes: List[Outcome] = []
        self._finished = False
        self._abandoned = False

    def is_abandoned(self) -> bool:
        with self._lock:
            return self._abandoned

    def record(self, outcome: Outcome) -> None:
        with self._lock:
            if not self._abandoned:
                self._outcomes.append(outcome)

    def finish(self) -> None:
        with self._lock:
            self._finished = True

    def collect(self) -> List[Outcome]:
        """
        ここまでの結果を返す。未完了なら実行中のアイテムを unknown として補う。
        以後のワーカー側の記録は無視される。
        """
        with self._lock:
            self._abandoned = True
            outcomes = list(self._outcomes)
            # 結果はアイテム順に 1 件ずつ記録されるので、件数 = 次に試行するアイテムの位置
            done = len(outcomes)
            last_sent = bool(outcomes) and outcomes[-1].status == DeliveryStatus.SENT
            if not self._finished and not last_sent and done < len(self.task.items):
                pending = self.task.items[done]
                fallback_from = self.task.items[done - 1].channel if done > 0 else None
                outcomes.append(
                    Outcome(
                        item=pending,
                        status=DeliveryStatus.UNKNOWN,
                        reason="timeout",
                        fallback_from=fallback_from,
                    )
                )
            return outcomes


class ChannelDispatcher:
    """
    配信アイテムをプロバイダへ送信するサービス。

    provider は send(channel, address, content) を持つ外部コラボレーター
    （通常は ChannelRoutingProvider）。sleep はテストで差し替えられるように注入する。
    """

    def __init__(
        self,
        provider: DeliveryProvider,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1.")
        self._provider = provider
        self._retry = retry_policy or RetryPolicy()
        self._max_workers = max_workers
        self._sleep = sleep

    # ---- 公開 API ------------------------------------------------------

    def dispatch(
        self,
        items: Sequence[DispatchItem],
        priority: ChannelPriority,
        *,
        timeout: Optional[float] = None,
    ) -> List[Outcome]:
        """
        items を priority に従って送信し、結果一覧を返す。
        """
        return self.run(self.plan(items, priority), timeout=timeout)

    def plan(self, items: Sequence[DispatchItem], priority: ChannelPriority) -> List[DeliveryTask]:
        """
        配信アイテムを配信タスクに組み立てる。

        - BOTH: 各アイテムを独立したタスクにする
        - EMAIL_ONLY / SMS_ONLY: 指定チャンネルのアイテムだけを独立タスクにする
        - EMAIL_FIRST / SMS_FIRST: 受信者ごとに [一次, 二次] の順に並べる。
          一次チャンネルの宛先が無い受信者は二次だけのタスクになる
        """
        only = _only_channel(priority)
        if only is not None:
            return [DeliveryTask(items=[i], priority=priority) for i in items if i.channel == only]

        primary = _primary_channel(priority)
        if primary is None:
            return [DeliveryTask(items=[i], priority=priority) for i in items]

        groups: Dict[str, List[DispatchItem]] = {}
        for item in items:
            groups.setdefault(item.recipient_key, []).append(item)

        tasks: List[DeliveryTask] = []
        for group in groups.values():
            ordered = [i for i in group if i.channel == primary] + [
                i for i in group if i.channel != primary
            ]
            tasks.append(DeliveryTask(items=ordered, priority=priority))
        return tasks

    def run(self, tasks: Sequence[DeliveryTask], *, timeout: Optional[float] = None) -> List[Outcome]:
        """
        タスクをワーカープールで並列実行する。

        timeout（秒）を超えて終わらないタスクは放棄し、unknown として結果に含める。
        受信者間・タスク間の順序は保証しない（戻り値はタスクの投入順）。
        """
        runs = [_TaskRun(task) for task in tasks if task.items]
        if not runs:
            return []

        if timeout is not None and timeout <= 0:
            logger.warning("Dispatch deadline already exceeded. tasks=%d", len(runs))
            return [outcome for run in runs for outcome in run.collect()]

        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(runs)),
            thread_name_prefix="notify-dispatch",
        )
        try:
            futures = [executor.submit(self._run_task, run) for run in runs]
            _, not_done = wait(futures, timeout=timeout)
            if not_done:
                logger.warning(
                    "Dispatch deadline exceeded; abandoning tasks. pending=%d timeout=%s",
                    len(not_done),
                    timeout,
                )
                for future in not_done:
                    future.cancel()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        outcomes: List[Outcome] = []
        for run in runs:
            outcomes.extend(run.collect())
        return outcomes

    # ---- 内部ヘルパー -------------------------------------------------

    def _run_task(self, run: _TaskRun) -> None:
        fallback_from: Optional[NotificationChannel] = None
        previous_reason: Optional[str] = None
        try:
            for item in run.task.items:
                if run.is_abandoned():
                    return

                outcome = self._deliver(item)
                if fallback_from is not None:
                    outcome.fallback_from = fallback_from
                    if outcome.status == DeliveryStatus.SENT:
                        outcome.reason = f"{fallback_from.value} failed first: {previous_reason}"
                run.record(outcome)

                if outcome.status == DeliveryStatus.SENT:
                    break
                fallback_from = item.channel
                previous_reason = outcome.reason
        finally:
            run.finish()

    def _deliver(self, item: DispatchItem) -> Outcome:
        """
        1 アイテムを送信する。一時的失敗のみリトライする。
        """
        last_reason: Optional[str] = None
        for attempt in range(1, self._retry.max_attempts + 1):
            try:
                self._provider.send(item.channel, item.address, item.content)
            except TransientDeliveryError as exc:
                last_reason = str(exc)
                if attempt < self._retry.max_attempts:
                    logger.info(
                        "Transient delivery failure; retrying. channel=%s address=%s attempt=%d",
                        item.channel.value,
                        item.address,
                        attempt,
                    )
                    self._sleep(self._retry.delay_for(attempt))
                continue
            except PermanentDeliveryError as exc:
                logger.warning(
                    "Delivery rejected. channel=%s address=%s error=%s",
                    item.channel.value,
                    item.address,
                    exc,
                )
                return Outcome(item=item, status=DeliveryStatus.FAILED, reason=str(exc), attempts=attempt)
            except Exception as exc:  # noqa: BLE001 - 1 受信者の失敗で他の配信を止めない
                logger.exception(
                    "Unexpected provider error. channel=%s address=%s",
                    item.channel.value,
                    item.address,
                )
                return Outcome(item=item, status=DeliveryStatus.FAILED, reason=str(exc), attempts=attempt)

            return Outcome(item=item, status=DeliveryStatus.SENT, attempts=attempt)

        logger.warning(
            "Delivery failed after retries. channel=%s address=%s attempts=%d error=%s",
            item.channel.value,
            item.address,
            self._retry.max_attempts,
            last_reason,
        )
        return Outcome(
            item=item,
            status=DeliveryStatus.FAILED,
            reason=last_reason,
            attempts=self._retry.max_attempts,
        )
