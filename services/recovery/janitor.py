# services/recovery/janitor.py
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from shared.clock import Clock, SystemClock, iso_from_timestamp
from shared.errors import ASSISTANT_APOLOGY_MESSAGE, USER_TIMEOUT_ERROR
from shared.job_queue import JobQueue
from shared.logger import ErrorSink, debug_log
from shared.schemas import ProcessingStage, StatusUpdate
from shared.status import ACTIVE_STATUSES, MessageStatus, Stage
from shared.status_store import MessageSnapshot, StatusStore

SOURCE = "Janitor"


class JanitorAction(str, Enum):
    FAIL_TIMEOUT = "fail_timeout"
    FAIL_APOLOGY = "fail_apology"
    SALVAGE = "salvage"


@dataclass
class JanitorReport:
    dry_run: bool = False
    scanned: int = 0
    failed: List[str] = field(default_factory=list)
    salvaged: List[str] = field(default_factory=list)
    skipped_live: List[str] = field(default_factory=list)
    skipped_conflict: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def decide(message: MessageSnapshot) -> JanitorAction:
    if message.role != "assistant":
        return JanitorAction.FAIL_TIMEOUT
    if message.content.strip():
        return JanitorAction.SALVAGE
    return JanitorAction.FAIL_APOLOGY


class StuckMessageJanitor:
    """
    一次性清理长时间卡住的消息 (默认 15 分钟)
      - user 消息                -> failed (超时)
      - assistant 消息，内容为空  -> failed + 道歉文案
      - assistant 消息，有部分内容 -> completed，内容原样保留
    Rows with a live job are left alone; every write is guarded by the row version.
    """

    def __init__(self, store: StatusStore, queue: Optional[JobQueue] = None, clock: Optional[Clock] = None,
                 threshold_seconds: float = 900.0, batch_size: int = 500,
                 error_sink: Optional[ErrorSink] = None):
        self._store = store
        self._queue = queue
        self._clock = clock or SystemClock()
        self.threshold_seconds = threshold_seconds
        self.batch_size = batch_size
        self._error_sink = error_sink or ErrorSink()

    def run(self, dry_run: bool = False) -> JanitorReport:
        report = JanitorReport(dry_run=dry_run)
        now = self._clock.now()
        acted = 0
        for message in self._store.iter_stale(ACTIVE_STATUSES, now - self.threshold_seconds, self.batch_size):
            if acted >= self.batch_size:
                break
            report.scanned += 1
            debug_log(f"- {message.id} | status={message.status} role={message.role} "
                      f"last_activity={message.last_activity.isoformat()}", "DEBUG")
            try:
                if self._queue is not None and self._queue.has_live_job(message.id):
                    report.skipped_live.append(message.id)
                    continue
                acted += 1

                action = decide(message)
                if dry_run:
                    target = report.salvaged if action == JanitorAction.SALVAGE else report.failed
                    target.append(message.id)
                    continue

                if self._apply(message, action, now):
                    target = report.salvaged if action == JanitorAction.SALVAGE else report.failed
                    target.append(message.id)
                else:
                    report.skipped_conflict.append(message.id)
            except Exception as e:
                report.errors.append(message.id)
                self._error_sink(SOURCE, "清理消息失败", message.id, e)

        debug_log(f"扫描 {report.scanned} 条卡住超过 {self.threshold_seconds:.0f}s 的消息", "INFO")

        verb = "将会" if dry_run else "已"
        debug_log(f"{verb}标记 failed: {len(report.failed)}，{verb}保留部分内容 completed: {len(report.salvaged)}",
                  "SUCCESS")
        return report

    def _apply(self, message: MessageSnapshot, action: JanitorAction, now: float) -> bool:
        trace = {
            "cleared_at": iso_from_timestamp(now),
            "original_status": message.status,
            "reason": "stuck_message_recovery",
        }
        if action == JanitorAction.SALVAGE:
            stage = ProcessingStage(stage=Stage.JANITOR_SALVAGED, completion_percentage=100, **trace)
            return self._store.apply_update(
                message.id,
                StatusUpdate(status=MessageStatus.COMPLETED.value, stage=stage),
                expected_statuses=ACTIVE_STATUSES,
                expected_version=message.version,
            )

        fallback = ASSISTANT_APOLOGY_MESSAGE if action == JanitorAction.FAIL_APOLOGY else None
        return self._store.mark_failed(
            message.id,
            USER_TIMEOUT_ERROR,
            stage=Stage.JANITOR_FAILED,
            fallback_content=fallback,
            expected_version=message.version,
            **trace,
        )
