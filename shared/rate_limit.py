# shared/rate_limit.py
import threading
import uuid
from typing import Optional

import redis

from shared.clock import Clock

MIN_WAIT_SECONDS = 0.05


class RateLimiter:
    """
    全局限流 (滑动窗口)
    Max ``max_jobs`` job starts per rolling ``window_seconds``, shared by every
    worker process through one Redis sorted set.
    """

    def __init__(self, client: redis.Redis, key: str, max_jobs: int, window_seconds: float,
                 clock: Clock, retry_interval: float = 0.5):
        self._client = client
        self.key = key
        self.max_jobs = max_jobs
        self.window_seconds = window_seconds
        self._clock = clock
        self._retry_interval = retry_interval

    @property
    def enabled(self) -> bool:
        return self.max_jobs > 0 and self.window_seconds > 0

    def try_acquire(self) -> Optional[str]:
        if not self.enabled:
            return "unlimited"

        now = self._clock.now()
        token = f"{now:.6f}-{uuid.uuid4().hex[:8]}"
        window_start = now - self.window_seconds

        def _tx(pipe):
            in_window = pipe.zcount(self.key, f"({window_start}", "+inf")
            pipe.multi()
            pipe.zremrangebyscore(self.key, "-inf", window_start)
            if in_window >= self.max_jobs:
                return None
            pipe.zadd(self.key, {token: now})
            pipe.expire(self.key, int(self.window_seconds) + 1)
            return token

        return self._client.transaction(_tx, self.key, value_from_callable=True)

    def acquire(self, stop_event: Optional[threading.Event] = None) -> Optional[str]:
        """Block until a slot frees up; returns None if ``stop_event`` fires first."""
        while not (stop_event and stop_event.is_set()):
            token = self.try_acquire()
            if token is not None:
                return token
            if not self._clock.sleep(self.seconds_until_slot(), stop_event):
                return None
        return None

    def release(self, token: Optional[str]) -> None:
        # 没租到任务时把名额还回去
        if token and self.enabled:
            self._client.zrem(self.key, token)

    def seconds_until_slot(self) -> float:
        oldest = self._client.zrange(self.key, 0, 0, withscores=True)
        if not oldest:
            return self._retry_interval
        wait = float(oldest[0][1]) + self.window_seconds - self._clock.now()
        return max(wait, MIN_WAIT_SECONDS)
