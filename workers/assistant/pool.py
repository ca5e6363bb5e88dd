# workers/assistant/pool.py
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from shared.clock import Clock, SystemClock
from shared.errors import QueueUnavailableError
from shared.job_queue import JobQueue
from shared.logger import ErrorSink, debug_log
from shared.rate_limit import RateLimiter
from shared.schemas import JobEnvelope
from workers.assistant.message_worker import MessageJobHandler


@dataclass
class PoolState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    jobs_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    leases_lost_total: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def tick(self, did_work: bool):
        with self._lock:
            self.ticks_total += 1
            if did_work:
                self.jobs_total += 1
            else:
                self.idle_ticks_total += 1

    def error(self):
        with self._lock:
            self.ticks_total += 1
            self.errors_total += 1

    def outcome(self, name: str):
        with self._lock:
            self.outcomes[name] = self.outcomes.get(name, 0) + 1

    def lease_lost(self):
        with self._lock:
            self.leases_lost_total += 1


class WorkerPool:
    """
    N 个并发执行槽 + 全局限流
    Each slot: reclaim expired leases -> heartbeat -> rate-limit token -> lease one
    job -> run it to the end (lease kept alive by a side thread) -> next.
    """

    def __init__(self, queue: JobQueue, handler: MessageJobHandler, limiter: Optional[RateLimiter] = None,
                 clock: Optional[Clock] = None, concurrency: int = 5, consumer_name: str = "worker",
                 lease_heartbeat_seconds: float = 20.0, idle_backoff: float = 1.0, error_backoff: float = 5.0,
                 error_sink: Optional[ErrorSink] = None):
        self._queue = queue
        self._handler = handler
        self._limiter = limiter
        self._clock = clock or SystemClock()
        self.concurrency = max(concurrency, 1)
        self.consumer_name = consumer_name
        self.lease_heartbeat_seconds = lease_heartbeat_seconds
        self.idle_backoff = idle_backoff
        self.error_backoff = error_backoff
        self._error_sink = error_sink or ErrorSink()

        self.stop_event = threading.Event()
        self.state = PoolState()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------ lifecycle

    def start(self):
        debug_log("=" * 40, "INFO")
        debug_log(f"Worker Pool 启动: {self.consumer_name} | 并发: {self.concurrency}", "INFO")
        self.state.started = True
        for slot in range(self.concurrency):
            thread = threading.Thread(
                target=self.run_slot, args=(slot,), name=f"{self.consumer_name}-slot-{slot}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self):
        """Stop leasing new jobs; in-flight jobs finish or get released at their next poll wait."""
        if not self.stop_event.is_set():
            debug_log(f"🛑 {self.consumer_name} 正在停止，不再领取新任务...", "WARNING")
        self.stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else self._clock.now() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(deadline - self._clock.now(), 0)
            thread.join(remaining)
        finished = not any(t.is_alive() for t in self._threads)
        if finished:
            self.state.stopped = True
            try:
                self._queue.clear_heartbeat(self.consumer_name)
            except QueueUnavailableError as e:
                debug_log(f"清理心跳失败: {e}", "WARNING")
            debug_log(f"Worker Pool 已停止: {self.consumer_name}", "INFO")
        return finished

    # ---------------------------------------------------------------- loop

    def run_slot(self, slot: int = 0):
        debug_log(f"执行槽 {slot} 进入主循环...", "DEBUG")
        while not self.stop_event.is_set():
            delay = self.idle_backoff
            try:
                did_work = self.run_once()
                self.state.tick(did_work)
                delay = 0 if did_work else self.idle_backoff
            except Exception as e:
                self.state.error()
                delay = self.error_backoff
                self._error_sink("Worker-Loop", f"执行槽 {slot} 循环异常", None, e)

            if delay and not self._clock.sleep(delay, self.stop_event):
                break

    def run_once(self) -> bool:
        """One tick of a slot. Returns True if a job was leased and executed."""
        self._queue.reclaim_expired()
        self._queue.record_heartbeat(self.consumer_name)

        token = None
        if self._limiter is not None:
            token = self._limiter.acquire(self.stop_event)
            if token is None:
                return False

        try:
            envelope = self._queue.dequeue(self.consumer_name)
        except Exception:
            # 没领到任务，名额还回去
            if self._limiter is not None:
                self._limiter.release(token)
            raise
        if envelope is None:
            if self._limiter is not None:
                self._limiter.release(token)
            return False

        self._run_job(envelope)
        return True

    def _run_job(self, envelope: JobEnvelope):
        done = threading.Event()
        lease_lost = threading.Event()

        def _keep_lease():
            while not done.wait(timeout=self.lease_heartbeat_seconds):
                try:
                    if not self._queue.extend_lease(envelope.job_id):
                        lease_lost.set()
                        return
                except QueueUnavailableError as e:
                    # 续租失败不打断任务，最坏情况是租约过期被重新投递
                    debug_log(f"续租失败 {envelope.job_id}: {e}", "WARNING")

        heartbeat = None
        if self.lease_heartbeat_seconds > 0:
            heartbeat = threading.Thread(target=_keep_lease, name=f"lease-{envelope.job_id}", daemon=True)
            heartbeat.start()
        try:
            outcome = self._handler.handle(envelope, self.stop_event)
        finally:
            done.set()
            if heartbeat is not None:
                heartbeat.join()

        self.state.outcome(outcome.value)
        if lease_lost.is_set():
            self.state.lease_lost()
            debug_log(f"⚠️ 任务执行期间租约丢失: {envelope.job_id}", "WARNING")
        return outcome
