import threading
from typing import List, Optional

import fakeredis
import pytest

from services.gateway.producer import MessageProducer
from shared.config import RetryPolicy
from shared.database import create_db_engine, create_session_factory, init_db
from shared.job_queue import JobQueue
from shared.logger import ErrorSink
from shared.schemas import InvocationRequest, InvocationResponse, JobEnvelope, JobPayload, PollResponse
from shared.status_store import StatusStore
from workers.assistant.invoker import InvocationAdapter
from workers.assistant.message_worker import MessageJobHandler, fail_exhausted_job

T0 = 1_700_000_000.0


class FakeClock:
    """Deterministic clock: sleeping just advances time."""

    def __init__(self, start: float = T0):
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float):
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float, stop_event: Optional[threading.Event] = None) -> bool:
        if stop_event is not None and stop_event.is_set():
            return False
        with self._lock:
            self.sleeps.append(seconds)
            self._now += max(seconds, 0)
        return True


class ScriptedProcessor:
    """Processor double: replays a list of invoke/poll answers (exceptions are raised)."""

    def __init__(self, invoke=None, polls=None):
        self.invoke_script = list(invoke or [])
        self.poll_script = list(polls or [])
        self.requests: List[InvocationRequest] = []
        self.poll_tokens: List[str] = []

    def invoke(self, request: InvocationRequest) -> InvocationResponse:
        self.requests.append(request)
        return self._next(self.invoke_script, InvocationResponse)

    def poll(self, token: str) -> PollResponse:
        self.poll_tokens.append(token)
        return self._next(self.poll_script, PollResponse)

    def close(self):
        pass

    @staticmethod
    def _next(script, model):
        if not script:
            raise AssertionError("processor script exhausted")
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return model(**item)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    return StatusStore(session_factory, clock)


@pytest.fixture
def retry_policy():
    return RetryPolicy(initial_delay=5.0, growth_factor=2.0, max_delay=300.0)


@pytest.fixture
def queue(redis_client, retry_policy, clock, store):
    return JobQueue(
        redis_client, "test-queue", retry_policy, clock,
        lease_seconds=60.0, on_dead=fail_exhausted_job(store), infra_backoff=0.1,
    )


@pytest.fixture
def error_sink(session_factory):
    return ErrorSink(session_factory)


@pytest.fixture
def make_handler(store, queue, clock, error_sink):
    def _make(processor, poll_interval=10.0, max_poll_attempts=30):
        adapter = InvocationAdapter(processor, clock, poll_interval=poll_interval,
                                    max_poll_attempts=max_poll_attempts)
        return MessageJobHandler(store, queue, adapter, error_sink=error_sink, worker_id="worker-test", clock=clock)

    return _make


@pytest.fixture
def producer(store, queue, clock):
    return MessageProducer(store, queue, clock=clock, max_attempts=3)


def make_envelope(message_id, now, priority=0, max_attempts=3):
    payload = JobPayload(query=f"query for {message_id}", user_id="u1", session_id="s1")
    return JobEnvelope.new(message_id, payload, now, max_attempts=max_attempts, priority=priority)
