# services/monitor.py
from typing import Dict

from shared.job_queue import JobQueue
from shared.logger import debug_log

ALIVE = "ALIVE"
POTENTIALLY_DEAD = "POTENTIALLY DEAD"


def classify_workers(heartbeats: Dict[str, float], now: float, timeout_seconds: float = 60) -> Dict[str, str]:
    """
    💓 心跳检测：last heartbeat 超过 timeout_seconds 的 worker 视为可能已挂
    """
    return {
        consumer: (POTENTIALLY_DEAD if now - last_seen > timeout_seconds else ALIVE)
        for consumer, last_seen in heartbeats.items()
    }


def queue_report(queue: JobQueue, now: float, timeout_seconds: float = 60, dead_letters: int = 5) -> Dict:
    stats = queue.stats()
    workers = classify_workers(stats["heartbeats"], now, timeout_seconds)
    dead = [consumer for consumer, status in workers.items() if status == POTENTIALLY_DEAD]
    if dead:
        debug_log(f"📉 心跳检测: {len(dead)} 个 worker 超过 {timeout_seconds}s 没有心跳", "WARNING")
    return {
        "queue": queue.name,
        "waiting": stats["waiting"],
        "delayed": stats["delayed"],
        "active": stats["active"],
        "dead": stats["dead"],
        "workers": {
            consumer: {"status": status, "seconds_since_heartbeat": round(now - stats["heartbeats"][consumer], 1)}
            for consumer, status in workers.items()
        },
        "recent_dead_letters": queue.recent_dead_letters(dead_letters),
    }
