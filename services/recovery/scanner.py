# services/recovery/scanner.py
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from shared.clock import Clock, SystemClock
from shared.errors import RECOVERY_NO_QUERY_ERROR, QueueUnavailableError
from shared.job_queue import JobQueue
from shared.logger import ErrorSink, debug_log
from shared.schemas import JobEnvelope, JobPayload
from shared.status import ACTIVE_STATUSES, Stage
from shared.status_store import MessageSnapshot, StatusStore

SOURCE = "Recovery"


@dataclass
class RecoveryReport:
    scanned: int = 0
    requeued: List[str] = field(default_factory=list)
    skipped_live: List[str] = field(default_factory=list)
    skipped_conflict: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class RecoveryScanner:
    """
    定期扫描卡住的消息 (queued/processing 超过阈值) 并重新入队

    A message is only re-enqueued when no live job references it; the status
    write is guarded by the row version read during the scan.
    """

    def __init__(self, store: StatusStore, queue: JobQueue, clock: Optional[Clock] = None,
                 threshold_seconds: float = 300.0, period_seconds: float = 300.0,
                 priority: int = 10, max_attempts: int = 2, batch_size: int = 100,
                 error_sink: Optional[ErrorSink] = None):
        self._store = store
        self._queue = queue
        self._clock = clock or SystemClock()
        self.threshold_seconds = threshold_seconds
        self.period_seconds = period_seconds
        self.priority = priority
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self._error_sink = error_sink or ErrorSink()

    def scan_once(self) -> RecoveryReport:
        """
        Walks stale rows oldest first until ``batch_size`` of them were acted on;
        rows that still have a live job don't count toward the batch.
        """
        report = RecoveryReport()
        now = self._clock.now()
        acted = 0
        for message in self._store.iter_stale(ACTIVE_STATUSES, now - self.threshold_seconds, self.batch_size):
            if acted >= self.batch_size:
                break
            report.scanned += 1
            try:
                if self._queue.has_live_job(message.id):
                    debug_log(f"消息 {message.id} 已有活跃任务，跳过", "DEBUG")
                    report.skipped_live.append(message.id)
                    continue
                acted += 1
                self._recover(message, now, report)
            except QueueUnavailableError as e:
                # 队列不可用，本轮剩下的也不用试了
                report.errors.append(message.id)
                self._error_sink(SOURCE, "恢复时队列不可用", message.id, e)
                break
            except Exception as e:
                report.errors.append(message.id)
                self._error_sink(SOURCE, "恢复消息失败", message.id, e)

        if not report.scanned:
            debug_log("没有发现卡住的消息", "DEBUG")
            return report

        debug_log(
            f"恢复完成: scanned={report.scanned} requeued={len(report.requeued)} live={len(report.skipped_live)} "
            f"conflict={len(report.skipped_conflict)} failed={len(report.failed)} errors={len(report.errors)}",
            "INFO",
        )
        return report

    def _recover(self, message: MessageSnapshot, now: float, report: RecoveryReport):
        source = self._store.find_source_query(message)
        if source is None:
            if self._store.mark_failed(message.id, RECOVERY_NO_QUERY_ERROR, stage=Stage.RECOVERY_FAILED,
                                       expected_version=message.version):
                report.failed.append(message.id)
            else:
                report.skipped_conflict.append(message.id)
            return

        query, file_ids = source
        payload = JobPayload(
            query=query,
            user_id=message.user_id,
            session_id=message.session_id,
            file_ids=file_ids,
            is_text_only=not file_ids,
        )
        envelope = JobEnvelope.for_recovery(
            message.id, payload, now, max_attempts=self.max_attempts, priority=self.priority
        )
        job_id = self._queue.enqueue(envelope)
        if job_id is None:
            # 扫描和入队之间被别人抢先了
            report.skipped_live.append(message.id)
            return

        if self._store.mark_recovery_queued(message.id, message.status, job_id, expected_version=message.version):
            debug_log(f"🔧 已重新入队: {message.id} ({message.status} -> queued)", "INFO")
            report.requeued.append(message.id)
        else:
            # 行在扫描后被改过；job 照常执行，终态行会被 worker 跳过
            report.skipped_conflict.append(message.id)

    def run_forever(self, stop_event: threading.Event):
        debug_log(f"Recovery Scanner 启动 (阈值 {self.threshold_seconds}s，周期 {self.period_seconds}s)", "INFO")
        while not stop_event.is_set():
            try:
                self.scan_once()
            except Exception as e:
                self._error_sink(SOURCE, "扫描循环异常", None, e)
            if not self._clock.sleep(self.period_seconds, stop_event):
                break
        debug_log("Recovery Scanner 已停止", "INFO")
