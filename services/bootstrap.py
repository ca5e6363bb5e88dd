# services/bootstrap.py
from dataclasses import dataclass
from typing import Optional

import redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from shared.clock import Clock, SystemClock
from shared.config import Settings
from shared.database import create_db_engine, create_session_factory, init_db
from shared.job_queue import JobQueue
from shared.logger import ErrorSink, debug_log
from shared.rate_limit import RateLimiter
from shared.status_store import StatusStore
from services.gateway.producer import MessageProducer
from services.recovery.janitor import StuckMessageJanitor
from services.recovery.scanner import RecoveryScanner
from workers.assistant.invoker import InvocationAdapter, ProcessorClient
from workers.assistant.message_worker import MessageJobHandler, fail_exhausted_job
from workers.assistant.mock_processor import MockProcessor
from workers.assistant.pool import WorkerPool


@dataclass
class Runtime:
    settings: Settings
    clock: Clock
    redis_client: redis.Redis
    engine: Engine
    session_factory: sessionmaker
    error_sink: ErrorSink
    store: StatusStore
    queue: JobQueue
    limiter: RateLimiter
    processor: object
    adapter: InvocationAdapter
    handler: MessageJobHandler

    def build_pool(self) -> WorkerPool:
        return WorkerPool(
            self.queue,
            self.handler,
            limiter=self.limiter,
            clock=self.clock,
            concurrency=self.settings.worker_concurrency,
            consumer_name=self.settings.consumer_name,
            lease_heartbeat_seconds=self.settings.lease_heartbeat_seconds,
            idle_backoff=self.settings.idle_backoff_seconds,
            error_backoff=self.settings.error_backoff_seconds,
            error_sink=self.error_sink,
        )

    def build_scanner(self) -> RecoveryScanner:
        return RecoveryScanner(
            self.store,
            self.queue,
            clock=self.clock,
            threshold_seconds=self.settings.recovery_threshold_seconds,
            period_seconds=self.settings.recovery_check_interval,
            priority=self.settings.recovery_priority,
            max_attempts=self.settings.recovery_max_attempts,
            error_sink=self.error_sink,
        )

    def build_janitor(self, threshold_seconds: Optional[float] = None) -> StuckMessageJanitor:
        if threshold_seconds is None:
            threshold_seconds = self.settings.janitor_threshold_seconds
        return StuckMessageJanitor(
            self.store,
            self.queue,
            clock=self.clock,
            threshold_seconds=threshold_seconds,
            error_sink=self.error_sink,
        )

    def build_producer(self) -> MessageProducer:
        return MessageProducer(
            self.store,
            self.queue,
            clock=self.clock,
            max_attempts=self.settings.retry_max_attempts,
            error_sink=self.error_sink,
        )

    def close(self):
        self.processor.close()
        self.redis_client.close()
        self.engine.dispose()
        debug_log("连接已释放", "INFO")


def build_runtime(settings: Settings, mock: bool = False, clock: Optional[Clock] = None,
                  redis_client: Optional[redis.Redis] = None, engine: Optional[Engine] = None) -> Runtime:
    """
    组装所有组件 (不使用模块级全局连接)
    ``redis_client`` / ``engine`` can be injected, everything else is built from ``settings``.
    """
    clock = clock or SystemClock()
    redis_client = redis_client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
    engine = engine or create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)
    error_sink = ErrorSink(session_factory, enabled=settings.enable_db_log)

    store = StatusStore(session_factory, clock)
    queue = JobQueue(
        redis_client,
        settings.queue_name,
        settings.retry_policy,
        clock,
        lease_seconds=settings.lease_seconds,
        on_dead=fail_exhausted_job(store),
    )
    limiter = RateLimiter(
        redis_client,
        f"{settings.queue_name}:rate",
        settings.rate_limit_max,
        settings.rate_limit_window_seconds,
        clock,
    )

    if mock:
        debug_log("使用 Mock 处理服务", "WARNING")
        processor = MockProcessor()
    else:
        processor = ProcessorClient(
            settings.processor_base_url,
            token=settings.processor_token,
            invoke_path=settings.processor_invoke_path,
            poll_path=settings.processor_poll_path,
            timeout=settings.request_timeout,
        )
    adapter = InvocationAdapter(
        processor,
        clock,
        poll_interval=settings.poll_interval_seconds,
        max_poll_attempts=settings.poll_max_attempts,
    )
    handler = MessageJobHandler(
        store, queue, adapter, error_sink=error_sink, worker_id=settings.consumer_name, clock=clock
    )

    return Runtime(
        settings=settings,
        clock=clock,
        redis_client=redis_client,
        engine=engine,
        session_factory=session_factory,
        error_sink=error_sink,
        store=store,
        queue=queue,
        limiter=limiter,
        processor=processor,
        adapter=adapter,
        handler=handler,
    )
