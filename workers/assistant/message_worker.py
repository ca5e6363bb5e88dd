# workers/assistant/message_worker.py
import threading
from enum import Enum
from typing import Callable, Optional

from shared.clock import Clock, SystemClock
from shared.errors import (
    POLL_TIMEOUT_ERROR,
    PROCESSOR_FAILED_ERROR,
    RETRIES_EXHAUSTED_ERROR,
    InvocationFailedError,
    InvocationInterrupted,
    PollTimeoutError,
    ProcessorError,
)
from shared.job_queue import JobQueue
from shared.logger import ErrorSink, debug_log
from shared.schemas import JobEnvelope
from shared.status import is_terminal
from shared.status_store import StatusStore
from workers.assistant.invoker import InvocationAdapter

SOURCE = "Worker-Assistant"


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD = "dead"
    SKIPPED = "skipped"
    RELEASED = "released"
    DEAD_LETTERED = "dead_lettered"


def fail_exhausted_job(store: StatusStore) -> Callable[[JobEnvelope, str], None]:
    """Queue ``on_dead`` hook: a job that ran out of attempts leaves its message ``failed``."""

    def _on_dead(envelope: JobEnvelope, error: str):
        store.mark_failed(envelope.message_id, RETRIES_EXHAUSTED_ERROR, attempts=envelope.attempt + 1)

    return _on_dead


class MessageJobHandler:
    """
    处理单个任务的完整流程:
    读消息 -> 标记 processing -> 调用外部服务 -> 写终态 -> ack/nack

    Only terminal outcomes reach the message row with user-safe text; raw
    errors go to the console and sys_logs through ``error_sink``.
    """

    def __init__(self, store: StatusStore, queue: JobQueue, adapter: InvocationAdapter,
                 error_sink: Optional[ErrorSink] = None, worker_id: str = "worker",
                 clock: Optional[Clock] = None):
        self._store = store
        self._queue = queue
        self._adapter = adapter
        self._error_sink = error_sink or ErrorSink()
        self.worker_id = worker_id
        self._clock = clock or SystemClock()

    def handle(self, envelope: JobEnvelope, stop_event: Optional[threading.Event] = None) -> JobOutcome:
        message_id = envelope.message_id
        try:
            return self._execute(envelope, stop_event)

        except InvocationInterrupted:
            # 停机中：把任务还给队列，不消耗重试次数
            debug_log(f"🛑 停机中，归还任务 {envelope.job_id}", "WARNING")
            self._queue.release(envelope.job_id)
            return JobOutcome.RELEASED

        except (InvocationFailedError, PollTimeoutError) as e:
            return self._fail(envelope, e)

        except ProcessorError as e:
            self._error_sink(SOURCE, "调用处理服务失败", message_id, e)
            return self._retry_or_give_up(envelope, e)

        except Exception as e:
            # 未知内部错误，同样交给队列的重试策略
            self._error_sink(SOURCE, "Worker 内部逻辑异常", message_id, e)
            return self._retry_or_give_up(envelope, e)

    def _execute(self, envelope: JobEnvelope, stop_event: Optional[threading.Event]) -> JobOutcome:
        message_id = envelope.message_id
        debug_log(f"处理任务: {envelope.job_id} | attempt {envelope.attempt}", "REQUEST")

        message = self._store.get_message(message_id)
        if message is None:
            # 数据错误，重试也没用
            self._queue.dead_letter(envelope, "Message not found", self.worker_id)
            return JobOutcome.DEAD_LETTERED
        if message.message_status is None:
            self._queue.dead_letter(envelope, f"Unknown message status: {message.status}", self.worker_id)
            return JobOutcome.DEAD_LETTERED

        if is_terminal(message.message_status):
            debug_log(f"✋ 消息已是终态 ({message.status})，跳过: {message_id}", "INFO")
            self._queue.ack(envelope.job_id)
            return JobOutcome.SKIPPED

        if not self._store.mark_processing(message_id, envelope, self.worker_id):
            debug_log(f"✋ 无法标记 processing (可能已被取消)，跳过: {message_id}", "WARNING")
            self._queue.ack(envelope.job_id)
            return JobOutcome.SKIPPED

        start_time = self._clock.now()
        outcome = self._adapter.run(envelope.payload, message_id, stop_event)
        cost_time = round(self._clock.now() - start_time, 2)

        written = self._store.mark_completed(
            message_id,
            outcome.content,
            usage=outcome.metadata.get("usage"),
            cost_time=cost_time,
            poll_attempts=outcome.poll_attempts,
        )
        self._queue.ack(envelope.job_id)
        if not written:
            # 处理期间被外部取消/过期，结果丢弃
            debug_log(f"✋ 消息在处理期间进入终态，结果未写入: {message_id}", "WARNING")
            return JobOutcome.SKIPPED

        debug_log(f"任务完成: {message_id} (耗时: {cost_time:.2f}s)", "SUCCESS")
        return JobOutcome.COMPLETED

    def _fail(self, envelope: JobEnvelope, error: Exception) -> JobOutcome:
        message_id = envelope.message_id
        if isinstance(error, PollTimeoutError):
            user_error = POLL_TIMEOUT_ERROR
            extras = {"poll_attempts": error.attempts}
        else:
            user_error = PROCESSOR_FAILED_ERROR
            extras = {}

        self._error_sink(SOURCE, user_error, message_id, error)
        self._store.mark_failed(message_id, user_error, **extras)
        self._queue.ack(envelope.job_id)
        return JobOutcome.FAILED

    def _retry_or_give_up(self, envelope: JobEnvelope, error: Exception) -> JobOutcome:
        result = self._queue.nack(envelope.job_id, str(error))
        if result is None:
            debug_log(f"nack 时任务已不存在: {envelope.job_id}", "WARNING")
            return JobOutcome.SKIPPED
        if result.dead:
            # message 由队列的 on_dead 钩子标记为 failed
            return JobOutcome.DEAD

        self._store.mark_retrying(
            envelope.message_id,
            attempt=result.attempts_made,
            next_attempt_at=self._clock.now() + result.delay,
            error=f"Attempt {result.attempts_made} failed, retrying",
        )
        return JobOutcome.RETRYING
