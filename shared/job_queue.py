# shared/job_queue.py
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from shared.clock import Clock, iso_from_timestamp
from shared.config import RetryPolicy
from shared.errors import MalformedJobError, QueueUnavailableError
from shared.logger import debug_log
from shared.schemas import JobEnvelope

# waiting 集合的分数 = -priority * W + enqueued_at，分数越小越先出队
PRIORITY_WEIGHT = 1e10
DLQ_MAXLEN = 10000
PROMOTE_BATCH = 100

_INFRA_ERRORS = (RedisConnectionError, RedisTimeoutError)

DeadHook = Callable[[JobEnvelope, str], None]


@dataclass
class NackResult:
    job_id: str
    attempts_made: int
    dead: bool
    delay: float = 0.0
    envelope: Optional[JobEnvelope] = None


def _load(raw) -> Optional[JobEnvelope]:
    try:
        return JobEnvelope.from_wire(raw)
    except MalformedJobError:
        return None


class JobQueue:
    """
    Redis 持久化队列

    Keys (all prefixed with the queue name):
      :jobs       hash   job_id -> envelope JSON
      :waiting    zset   job_id -> priority/FIFO score
      :delayed    zset   job_id -> visible-at timestamp
      :active     zset   job_id -> lease expiry
      :index      hash   message_id -> job_id (duplicate suppression)
      :dead       stream dead letters
      :heartbeat  hash   consumer -> last heartbeat

    Every multi-key mutation runs in a WATCH/MULTI transaction, so a job is
    always in exactly one of waiting/delayed/active or gone entirely.
    """

    def __init__(self, client: redis.Redis, name: str, retry_policy: RetryPolicy, clock: Clock,
                 lease_seconds: float = 60.0, on_dead: Optional[DeadHook] = None,
                 infra_retries: int = 3, infra_backoff: float = 0.5):
        self._client = client
        self.name = name
        self.retry_policy = retry_policy
        self._clock = clock
        self.lease_seconds = lease_seconds
        self.on_dead = on_dead
        self._infra_retries = max(infra_retries, 1)
        self._infra_backoff = infra_backoff

        self._jobs_key = f"{name}:jobs"
        self._waiting_key = f"{name}:waiting"
        self._delayed_key = f"{name}:delayed"
        self._active_key = f"{name}:active"
        self._index_key = f"{name}:index"
        self.dead_key = f"{name}:dead"
        self._heartbeat_key = f"{name}:heartbeat"

    @staticmethod
    def score(envelope: JobEnvelope) -> float:
        return -envelope.priority * PRIORITY_WEIGHT + envelope.enqueued_at

    # ------------------------------------------------------------- producers

    def enqueue(self, envelope: JobEnvelope, delay: float = 0.0) -> Optional[str]:
        """
        :return: the job id, or None when a live job for the same message already exists
        :raises QueueUnavailableError: Redis unreachable (surfaced to the producer, not retried here)
        """
        now = self._clock.now()
        wire = envelope.to_wire()

        def _tx(pipe):
            existing = pipe.hget(self._index_key, envelope.message_id)
            if existing is not None and self._is_live(pipe, existing, now):
                return None

            pipe.multi()
            if existing is not None:
                # 旧 job 租约过期 (worker 已死)，直接替换
                self._purge(pipe, existing)
            pipe.hset(self._jobs_key, envelope.job_id, wire)
            pipe.hset(self._index_key, envelope.message_id, envelope.job_id)
            if delay > 0:
                pipe.zadd(self._delayed_key, {envelope.job_id: now + delay})
            else:
                pipe.zadd(self._waiting_key, {envelope.job_id: self.score(envelope)})
            return envelope.job_id

        try:
            job_id = self._transaction(_tx, self._index_key, self._active_key, self._jobs_key)
        except _INFRA_ERRORS as e:
            raise QueueUnavailableError(f"could not enqueue {envelope.job_id}: {e}") from e

        if job_id is None:
            debug_log(f"✋ 重复入队已忽略: message={envelope.message_id}", "INFO")
        else:
            debug_log(f"📥 已入队 {job_id} (priority={envelope.priority}, delay={delay}s)", "DEBUG")
        return job_id

    # ------------------------------------------------------------- consumers

    def dequeue(self, consumer: str = "") -> Optional[JobEnvelope]:
        """Lease the next eligible job, ordered by (priority desc, enqueued_at asc)."""
        now = self._clock.now()
        malformed: List[str] = []

        def _tx(pipe):
            malformed.clear()
            due = pipe.zrangebyscore(self._delayed_key, "-inf", now, start=0, num=PROMOTE_BATCH)
            head = pipe.zrange(self._waiting_key, 0, 0, withscores=True)

            envelopes: Dict[str, JobEnvelope] = {}
            scores: Dict[str, float] = {}
            orphans = []
            for job_id in due:
                raw = pipe.hget(self._jobs_key, job_id)
                envelope = _load(raw) if raw is not None else None
                if raw is None:
                    orphans.append(job_id)
                elif envelope is None:
                    malformed.append(job_id)
                else:
                    envelopes[job_id] = envelope
                    scores[job_id] = self.score(envelope)

            if head:
                head_id, head_score = head[0]
                raw = pipe.hget(self._jobs_key, head_id)
                envelope = _load(raw) if raw is not None else None
                if raw is None:
                    orphans.append(head_id)
                elif envelope is None:
                    malformed.append(head_id)
                else:
                    envelopes[head_id] = envelope
                    scores[head_id] = float(head_score)

            best = min(scores, key=scores.get) if scores else None

            pipe.multi()
            for job_id in orphans:
                pipe.zrem(self._delayed_key, job_id)
                pipe.zrem(self._waiting_key, job_id)
            for job_id in malformed:
                self._purge(pipe, job_id)
                self._xadd_dead(pipe, job_id, None, "Malformed envelope", consumer or "dequeue", now)
            for job_id in due:
                if job_id in scores and job_id != best:
                    pipe.zrem(self._delayed_key, job_id)
                    pipe.zadd(self._waiting_key, {job_id: scores[job_id]})
            if best is None:
                return None
            pipe.zrem(self._waiting_key, best)
            pipe.zrem(self._delayed_key, best)
            pipe.zadd(self._active_key, {best: now + self.lease_seconds})
            return envelopes[best]

        envelope = self._with_retry(
            lambda: self._transaction(_tx, self._waiting_key, self._delayed_key, self._active_key, self._jobs_key),
            "dequeue",
        )
        for job_id in malformed:
            debug_log(f"💀 已移入死信队列 (格式错误): {job_id}", "WARNING")
        if envelope is not None:
            debug_log(f"🔒 [{consumer}] 租用任务 {envelope.job_id} (attempt {envelope.attempt})", "DEBUG")
        return envelope

    def extend_lease(self, job_id: str) -> bool:
        def _extend():
            if self._client.zscore(self._active_key, job_id) is None:
                return False
            self._client.zadd(self._active_key, {job_id: self._clock.now() + self.lease_seconds}, xx=True)
            return True

        return self._with_retry(_extend, "extend_lease")

    def ack(self, job_id: str) -> bool:
        """Remove a finished job. Returns False if it was already gone."""

        def _tx(pipe):
            raw = pipe.hget(self._jobs_key, job_id)
            if raw is None:
                pipe.multi()
                pipe.zrem(self._active_key, job_id)
                return False
            envelope = _load(raw)
            current = pipe.hget(self._index_key, envelope.message_id) if envelope else None
            pipe.multi()
            self._purge(pipe, job_id)
            if envelope is not None and current == job_id:
                pipe.hdel(self._index_key, envelope.message_id)
            return True

        return self._with_retry(
            lambda: self._transaction(_tx, self._jobs_key, self._index_key), "ack"
        )

    def nack(self, job_id: str, error: str, require_expired_lease: bool = False) -> Optional[NackResult]:
        """
        Reschedule a failed job with exponential backoff, or move it to the dead
        sink once ``max_attempts`` executions have been spent.
        """
        now = self._clock.now()

        def _tx(pipe):
            if require_expired_lease:
                lease = pipe.zscore(self._active_key, job_id)
                if lease is None or float(lease) >= now:
                    return None
            raw = pipe.hget(self._jobs_key, job_id)
            if raw is None:
                return None
            envelope = _load(raw)
            if envelope is None:
                pipe.multi()
                self._purge(pipe, job_id)
                self._xadd_dead(pipe, job_id, None, "Malformed envelope", "nack", now)
                return NackResult(job_id=job_id, attempts_made=0, dead=True)

            attempts_made = envelope.attempt + 1
            if attempts_made >= envelope.max_attempts:
                current = pipe.hget(self._index_key, envelope.message_id)
                pipe.multi()
                self._purge(pipe, job_id)
                if current == job_id:
                    pipe.hdel(self._index_key, envelope.message_id)
                self._xadd_dead(pipe, job_id, envelope, error, "nack", now)
                return NackResult(job_id=job_id, attempts_made=attempts_made, dead=True, envelope=envelope)

            delay = self.retry_policy.delay_for(envelope.attempt)
            updated = envelope.model_copy(update={"attempt": attempts_made})
            pipe.multi()
            pipe.zrem(self._active_key, job_id)
            pipe.zrem(self._waiting_key, job_id)
            pipe.hset(self._jobs_key, job_id, updated.to_wire())
            pipe.zadd(self._delayed_key, {job_id: now + delay})
            return NackResult(job_id=job_id, attempts_made=attempts_made, dead=False, delay=delay, envelope=updated)

        result = self._with_retry(
            lambda: self._transaction(_tx, self._jobs_key, self._active_key, self._index_key), "nack"
        )
        if result is None:
            return None

        if result.dead:
            debug_log(f"💀 任务重试耗尽，移入死信队列: {job_id} ({result.attempts_made} attempts)", "WARNING")
            if self.on_dead is not None and result.envelope is not None:
                self.on_dead(result.envelope, error)
        else:
            debug_log(f"🔁 任务 {job_id} 将在 {result.delay:.1f}s 后重试 "
                      f"(attempt {result.attempts_made}/{result.envelope.max_attempts})", "INFO")
        return result

    def release(self, job_id: str) -> bool:
        """Give a leased job back without spending an attempt (used on shutdown)."""

        def _tx(pipe):
            raw = pipe.hget(self._jobs_key, job_id)
            envelope = _load(raw) if raw is not None else None
            if envelope is None or pipe.zscore(self._active_key, job_id) is None:
                return False
            pipe.multi()
            pipe.zrem(self._active_key, job_id)
            pipe.zadd(self._waiting_key, {job_id: self.score(envelope)})
            return True

        return self._with_retry(
            lambda: self._transaction(_tx, self._jobs_key, self._active_key), "release"
        )

    def reclaim_expired(self) -> int:
        """Treat every expired lease as a failed attempt so it gets redelivered (or dead-lettered)."""
        now = self._clock.now()
        expired = self._with_retry(
            lambda: self._client.zrangebyscore(self._active_key, "-inf", now), "reclaim_expired"
        )
        reclaimed = 0
        for job_id in expired:
            if self.nack(job_id, "Lease expired", require_expired_lease=True) is not None:
                reclaimed += 1
        if reclaimed:
            debug_log(f"♻️ 回收了 {reclaimed} 个租约过期的任务", "WARNING")
        return reclaimed

    def dead_letter(self, envelope: JobEnvelope, error: str, source: str = "worker") -> None:
        """Move a job straight to the dead sink (data errors are never retried)."""
        now = self._clock.now()

        def _tx(pipe):
            current = pipe.hget(self._index_key, envelope.message_id)
            pipe.multi()
            self._purge(pipe, envelope.job_id)
            if current == envelope.job_id:
                pipe.hdel(self._index_key, envelope.message_id)
            self._xadd_dead(pipe, envelope.job_id, envelope, error, source, now)

        self._with_retry(lambda: self._transaction(_tx, self._index_key, self._jobs_key), "dead_letter")
        debug_log(f"💀 已移入死信队列: {envelope.job_id} ({error})", "WARNING")

    # -------------------------------------------------------------- inspection

    def has_live_job(self, message_id: str) -> bool:
        """True if a waiting, delayed or actively-leased job references ``message_id``."""
        job_id = self._client.hget(self._index_key, message_id)
        if job_id is None:
            return False
        return self._is_live(self._client, job_id, self._clock.now())

    def get_job(self, job_id: str) -> Optional[JobEnvelope]:
        raw = self._client.hget(self._jobs_key, job_id)
        return _load(raw) if raw is not None else None

    def job_for_message(self, message_id: str) -> Optional[str]:
        return self._client.hget(self._index_key, message_id)

    def lease_expiry(self, job_id: str) -> Optional[float]:
        value = self._client.zscore(self._active_key, job_id)
        return float(value) if value is not None else None

    def stats(self) -> Dict[str, object]:
        pipe = self._client.pipeline(transaction=False)
        pipe.zcard(self._waiting_key)
        pipe.zcard(self._delayed_key)
        pipe.zcard(self._active_key)
        pipe.xlen(self.dead_key)
        pipe.hgetall(self._heartbeat_key)
        waiting, delayed, active, dead, heartbeats = pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "dead": dead,
            "heartbeats": {k: float(v) for k, v in (heartbeats or {}).items()},
        }

    def recent_dead_letters(self, count: int = 10) -> List[Dict[str, str]]:
        return [fields for _, fields in self._client.xrevrange(self.dead_key, count=count)]

    def record_heartbeat(self, consumer: str) -> None:
        self._client.hset(self._heartbeat_key, consumer, self._clock.now())

    def clear_heartbeat(self, consumer: str) -> None:
        self._client.hdel(self._heartbeat_key, consumer)

    # ---------------------------------------------------------------- helpers

    def _transaction(self, func, *watches):
        return self._client.transaction(func, *watches, value_from_callable=True)

    def _is_live(self, conn, job_id: str, now: float) -> bool:
        if not conn.hexists(self._jobs_key, job_id):
            return False
        lease = conn.zscore(self._active_key, job_id)
        if lease is not None:
            # 租约过期 = worker 已经挂了
            return float(lease) >= now
        return (conn.zscore(self._waiting_key, job_id) is not None
                or conn.zscore(self._delayed_key, job_id) is not None)

    def _purge(self, pipe, job_id: str) -> None:
        pipe.zrem(self._waiting_key, job_id)
        pipe.zrem(self._delayed_key, job_id)
        pipe.zrem(self._active_key, job_id)
        pipe.hdel(self._jobs_key, job_id)

    def _xadd_dead(self, pipe, job_id: str, envelope: Optional[JobEnvelope], error: str,
                   source: str, now: float) -> None:
        dead_msg = {
            "original_id": job_id,
            "message_id": envelope.message_id if envelope else "",
            "error": str(error),
            "source_worker": source,
            "failed_at": iso_from_timestamp(now),
            "attempts": str(envelope.attempt + 1) if envelope else "0",
            "raw_payload": envelope.to_wire() if envelope else "",
        }
        pipe.xadd(self.dead_key, dead_msg, maxlen=DLQ_MAXLEN, approximate=True)

    def _with_retry(self, fn, op: str):
        delay = self._infra_backoff
        for attempt in range(1, self._infra_retries + 1):
            try:
                return fn()
            except _INFRA_ERRORS as e:
                if attempt == self._infra_retries:
                    debug_log(f"Redis 不可用，放弃 {op}: {e}", "ERROR")
                    raise QueueUnavailableError(f"{op} failed after {attempt} attempts: {e}") from e
                debug_log(f"Redis 不可用 ({op})，{delay:.1f}s 后重试: {e}", "WARNING")
                self._clock.sleep(delay)
                delay = min(delay * 2, 10.0)
