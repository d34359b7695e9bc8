# backend/transfer_notify/notifications/audit.py

"""
配信結果（DispatchReport）の監査出力。

永続的な監査ログの保存先は外部コラボレーターの責務。ここでは
record(report) の口と、ログ出力のみ行う実装、
handle() の呼び出し元を待たせないためのキュー付きラッパーを提供する。
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Optional, Protocol

from .schemas import DeliveryStatus, DispatchReport

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, report: DispatchReport) -> None:  # pragma: no cover - Protocol
        ...


class LoggingAuditSink:
    """
    レポートの各エントリをステータスに応じたログレベルで出力する。

    - failed / unknown: WARNING
    - sent / skipped: INFO
    - エントリ 0 件: DEBUG（マッチなし・受信者なしはエラーではない）
    """

    def __init__(self, logger_: logging.Logger | None = None) -> None:
        self._logger = logger_ or logger

    def record(self, report: DispatchReport) -> None:
        if not report.entries:
            self._logger.debug(
                "No notifications dispatched. event_type=%s event_id=%s matched_rules=%d",
                report.event_type.value,
                report.event_id,
                len(report.matched_rule_ids),
            )
            return

        for entry in report.entries:
            text = (
                f"[{entry.channel.value}][{entry.status.value}] rule={entry.rule_id} "
                f"event={entry.event_type.value} to={entry.address}"
            )
            if entry.reason:
                text += f" reason={entry.reason}"

            if entry.status in (DeliveryStatus.FAILED, DeliveryStatus.UNKNOWN):
                self._logger.warning(text)
            else:
                self._logger.info(text)


class QueuedAuditSink:
    """
    record() をキューに積むだけで即座に返し、バックグラウンドスレッドで
    下位のシンクに書き出すラッパー。

    - キューが満杯のときは新しいレポートを捨てて warning を出す
    - 下位シンクの例外はログに残して次のレポートへ進む
    """

    def __init__(self, sink: AuditSink, *, max_queue: int = 1000) -> None:
        self._sink = sink
        self._q: "queue.Queue[Optional[DispatchReport]]" = queue.Queue(maxsize=max_queue)
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name="notify-audit", daemon=True)
        self._thread.start()

    def record(self, report: DispatchReport) -> None:
        if self._closed.is_set():
            logger.warning(
                "Audit sink closed; dropping report. event_type=%s event_id=%s",
                report.event_type.value,
                report.event_id,
            )
            return
        try:
            self._q.put_nowait(report)
        except queue.Full:
            logger.warning(
                "Audit queue full; dropping report. event_type=%s event_id=%s",
                report.event_type.value,
                report.event_id,
            )

    def flush(self, timeout: float = 5.0) -> bool:
        """
        積まれているレポートがすべて書き出されるまで待つ。書き出し終われば True。
        """
        deadline = time.monotonic() + timeout
        while self._q.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 2.0) -> None:
        """
        積まれているレポートを書き出し終えてからワーカーを止める。

        終了の合図は末尾に積む None で、それより前のレポートはすべて処理される。
        close() 後の record() は捨てられる。
        """
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._q.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Audit queue still full at shutdown; worker not stopped. pending=%d", self._q.qsize())
            return
        self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            report = self._q.get()
            try:
                if report is None:
                    break
                self._sink.record(report)
            except Exception:  # noqa: BLE001 - 監査出力の失敗でワーカーを止めない
                logger.exception("Audit sink failed. event_type=%s", report.event_type.value)
            finally:
                self._q.task_done()
