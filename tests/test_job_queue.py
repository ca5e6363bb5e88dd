import threading

import fakeredis
import pytest

from shared.config import RetryPolicy
from shared.errors import RETRIES_EXHAUSTED_ERROR, QueueUnavailableError
from shared.job_queue import JobQueue
from shared.schemas import JobEnvelope

from conftest import make_envelope


def test_dequeue_orders_by_priority_then_fifo(queue, clock):
    queue.enqueue(make_envelope("a", clock.now()))
    clock.advance(1)
    queue.enqueue(make_envelope("b", clock.now()))
    clock.advance(1)
    queue.enqueue(make_envelope("c", clock.now(), priority=10))

    order = [queue.dequeue("w").message_id for _ in range(3)]
    assert order == ["c", "a", "b"]
    assert queue.dequeue("w") is None


def test_leased_job_is_hidden_from_other_consumers(queue, clock):
    queue.enqueue(make_envelope("m1", clock.now()))

    leased = queue.dequeue("w1")
    assert leased.message_id == "m1"
    assert queue.dequeue("w2") is None
    assert queue.stats()["active"] == 1


def test_duplicate_enqueue_is_suppressed(queue, clock):
    first = queue.enqueue(make_envelope("m1", clock.now()))
    clock.advance(1)
    second = queue.enqueue(make_envelope("m1", clock.now()))

    assert first.startswith("m1:")
    assert second is None
    assert queue.has_live_job("m1")
    assert queue.stats()["waiting"] == 1

    # still suppressed while leased
    leased = queue.dequeue("w")
    assert queue.enqueue(make_envelope("m1", clock.now() + 1)) is None

    queue.ack(leased.job_id)
    assert not queue.has_live_job("m1")
    assert queue.enqueue(make_envelope("m1", clock.now() + 2)) is not None


def test_producer_and_recovery_race_leaves_one_job(queue, clock):
    normal = make_envelope("m1", clock.now())
    recovery = JobEnvelope.for_recovery("m1", normal.payload, clock.now())

    results = [queue.enqueue(normal), queue.enqueue(recovery)]
    assert results.count(None) == 1
    assert queue.stats()["waiting"] == 1


def test_abandoned_job_is_replaced(queue, clock):
    stale_id = queue.enqueue(make_envelope("m1", clock.now()))
    queue.dequeue("crashed-worker")

    clock.advance(61)  # lease expired, nobody reclaimed it yet
    assert not queue.has_live_job("m1")

    fresh_id = queue.enqueue(make_envelope("m1", clock.now()))
    assert fresh_id is not None and fresh_id != stale_id
    assert queue.get_job(stale_id) is None
    stats = queue.stats()
    assert (stats["waiting"], stats["active"]) == (1, 0)
    assert queue.job_for_message("m1") == fresh_id


def test_nack_backs_off_then_dead_letters(queue, store, clock):
    store.create_message("m1", "s1")
    queue.enqueue(make_envelope("m1", clock.now(), max_attempts=3))

    delays = []
    for _ in range(2):
        job = queue.dequeue("w")
        result = queue.nack(job.job_id, "processor down")
        assert not result.dead
        delays.append(result.delay)
        # not visible before the backoff elapses
        assert queue.dequeue("w") is None
        clock.advance(result.delay)

    job = queue.dequeue("w")
    assert job.attempt == 2
    result = queue.nack(job.job_id, "processor down")

    assert delays == [5.0, 10.0]
    assert result.dead
    assert result.attempts_made == 3
    clock.advance(10_000)
    assert queue.dequeue("w") is None
    assert not queue.has_live_job("m1")

    msg = store.get_message("m1")
    assert msg.status == "failed"
    assert msg.processing_stage["error"] == RETRIES_EXHAUSTED_ERROR
    assert "processor down" not in msg.content

    dead = queue.recent_dead_letters(5)
    assert len(dead) == 1
    assert dead[0]["message_id"] == "m1"
    assert dead[0]["error"] == "processor down"


def test_retry_delays_are_monotonic_and_capped():
    policy = RetryPolicy(initial_delay=5, growth_factor=2, max_delay=30)
    delays = [policy.delay_for(k) for k in range(8)]

    assert delays[:4] == [5, 10, 20, 30]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 30


def test_release_does_not_spend_an_attempt(queue, clock):
    queue.enqueue(make_envelope("m1", clock.now()))
    job = queue.dequeue("w")

    assert queue.release(job.job_id)
    again = queue.dequeue("w")
    assert again.job_id == job.job_id
    assert again.attempt == 0


def test_reclaim_expired_redelivers_with_attempt_spent(queue, clock):
    queue.enqueue(make_envelope("m1", clock.now()))
    job = queue.dequeue("w")

    clock.advance(30)
    assert queue.extend_lease(job.job_id)
    clock.advance(61)
    assert queue.reclaim_expired() == 1
    assert queue.stats()["delayed"] == 1

    clock.advance(5)
    again = queue.dequeue("w")
    assert again.job_id == job.job_id
    assert again.attempt == 1


def test_live_lease_is_not_reclaimed(queue, clock):
    queue.enqueue(make_envelope("m1", clock.now()))
    job = queue.dequeue("w")
    clock.advance(59)

    assert queue.reclaim_expired() == 0
    assert queue.lease_expiry(job.job_id) == pytest.approx(clock.now() + 1)


def test_extend_lease_after_ack_reports_lost(queue, clock):
    queue.enqueue(make_envelope("m1", clock.now()))
    job = queue.dequeue("w")
    queue.ack(job.job_id)

    assert queue.extend_lease(job.job_id) is False
    assert queue.ack(job.job_id) is False


def test_malformed_job_goes_to_dead_sink(queue, redis_client):
    redis_client.hset("test-queue:jobs", "bad-job", "{not json")
    redis_client.zadd("test-queue:waiting", {"bad-job": 0})

    assert queue.dequeue("w") is None
    assert queue.stats()["dead"] == 1
    assert not redis_client.hexists("test-queue:jobs", "bad-job")


def test_dead_letter_removes_job(queue, clock):
    envelope = make_envelope("m1", clock.now())
    queue.enqueue(envelope)
    queue.dequeue("w")

    queue.dead_letter(envelope, "Message not found", "w")
    assert not queue.has_live_job("m1")
    assert queue.stats()["dead"] == 1


def test_heartbeats(queue, clock):
    queue.record_heartbeat("worker-a")
    assert queue.stats()["heartbeats"] == {"worker-a": clock.now()}
    queue.clear_heartbeat("worker-a")
    assert queue.stats()["heartbeats"] == {}


def _offline_queue(clock, retry_policy):
    server = fakeredis.FakeServer()
    server.connected = False
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    return JobQueue(client, "offline", retry_policy, clock, infra_retries=3, infra_backoff=0.1)


def test_enqueue_surfaces_unavailable_store(clock, retry_policy):
    queue = _offline_queue(clock, retry_policy)
    with pytest.raises(QueueUnavailableError):
        queue.enqueue(make_envelope("m1", clock.now()))


def test_ack_retries_with_backoff_before_giving_up(clock, retry_policy):
    queue = _offline_queue(clock, retry_policy)
    with pytest.raises(QueueUnavailableError):
        queue.ack("m1:1")
    assert clock.sleeps == [0.1, 0.2]


def test_concurrent_enqueues_for_one_message_leave_one_job(queue, clock):
    senders = 8
    barrier = threading.Barrier(senders)
    results = []
    lock = threading.Lock()

    def _send(i):
        envelope = make_envelope("m1", clock.now() + i)
        if i % 2:
            envelope = JobEnvelope.for_recovery("m1", envelope.payload, clock.now() + i)
        barrier.wait()
        job_id = queue.enqueue(envelope)
        with lock:
            results.append(job_id)

    threads = [threading.Thread(target=_send, args=(i,)) for i in range(senders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    winners = [job_id for job_id in results if job_id is not None]
    assert len(results) == senders
    assert len(winners) == 1
    assert queue.job_for_message("m1") == winners[0]
    stats = queue.stats()
    assert stats["waiting"] + stats["delayed"] + stats["active"] == 1
