# services/gateway/producer.py
from dataclasses import dataclass
from typing import Iterable, Optional

from shared.clock import Clock, SystemClock
from shared.errors import MalformedJobError, QueueUnavailableError
from shared.job_queue import JobQueue
from shared.logger import ErrorSink, debug_log
from shared.schemas import JobEnvelope, JobPayload
from shared.status import is_terminal
from shared.status_store import StatusStore

SOURCE = "Gateway-Producer"


@dataclass
class SubmitResult:
    message_id: str
    job_id: Optional[str]
    duplicate: bool = False


class MessageProducer:
    """
    入口：持久化消息行 (queued) -> 入队
    Enqueue failures mark the message failed and propagate to the caller.
    """

    def __init__(self, store: StatusStore, queue: JobQueue, clock: Optional[Clock] = None,
                 max_attempts: int = 3, error_sink: Optional[ErrorSink] = None):
        self._store = store
        self._queue = queue
        self._clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self._error_sink = error_sink or ErrorSink()

    def submit(self, message_id: str, query: str, user_id: str, session_id: str,
               file_ids: Iterable[str] = (), is_text_only: Optional[bool] = None,
               role: str = "assistant") -> SubmitResult:
        required = {"message_id": message_id, "query": query, "user_id": user_id, "session_id": session_id}
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise MalformedJobError(f"Missing required fields: {', '.join(missing)}")

        file_ids = list(dict.fromkeys(file_ids))
        message = self._store.create_message(
            message_id, session_id, user_id=user_id, role=role,
            file_ids=file_ids, metadata={"query": query},
        )
        if is_terminal(message.status):
            debug_log(f"✋ 消息已是终态 ({message.status})，不再入队: {message_id}", "WARNING")
            return SubmitResult(message_id=message_id, job_id=None, duplicate=True)

        payload = JobPayload(
            query=query,
            user_id=user_id,
            session_id=session_id,
            file_ids=file_ids,
            is_text_only=not file_ids if is_text_only is None else is_text_only,
        )
        envelope = JobEnvelope.new(message_id, payload, self._clock.now(), max_attempts=self.max_attempts)

        try:
            job_id = self._queue.enqueue(envelope)
        except QueueUnavailableError as e:
            self._error_sink(SOURCE, "消息入队失败", message_id, e)
            self._store.mark_queue_failed(message_id)
            raise

        if job_id is None:
            return SubmitResult(message_id=message_id, job_id=self._queue.job_for_message(message_id), duplicate=True)

        self._store.mark_queued(message_id, job_id, self.max_attempts)
        debug_log(f"📥 消息已入队: {message_id} -> {job_id}", "SUCCESS")
        return SubmitResult(message_id=message_id, job_id=job_id)
