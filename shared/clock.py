# shared/clock.py
import threading
import time
from datetime import datetime, timezone
from typing import Optional


class Clock:
    """Wall clock plus an interruptible sleep. Workers never call time.sleep directly."""

    def now(self) -> float:
        raise NotImplementedError

    def sleep(self, seconds: float, stop_event: Optional[threading.Event] = None) -> bool:
        """
        :return: True if the full interval elapsed, False if ``stop_event`` fired first
        """
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float, stop_event: Optional[threading.Event] = None) -> bool:
        if seconds <= 0:
            return not (stop_event and stop_event.is_set())
        if stop_event is None:
            time.sleep(seconds)
            return True
        return not stop_event.wait(timeout=seconds)


def utc_from_timestamp(ts: float) -> datetime:
    # 数据库统一存 naive UTC
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def iso_from_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

