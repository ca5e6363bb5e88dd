# shared/status.py
from enum import Enum
from typing import Optional


class MessageStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Stage:
    """Values written to metadata.processing_stage.stage"""
    QUEUED = "queued"
    QUEUE_FAILED = "queue_failed"
    WORKER_PROCESSING = "worker_processing"
    RETRYING = "retrying"
    WORKER_COMPLETED = "worker_completed"
    WORKER_FAILED = "worker_failed"
    RECOVERY_QUEUED = "recovery_queued"
    RECOVERY_FAILED = "recovery_failed"
    JANITOR_FAILED = "janitor_failed"
    JANITOR_SALVAGED = "janitor_salvaged"


TERMINAL_STATUSES = frozenset({
    MessageStatus.COMPLETED,
    MessageStatus.FAILED,
    MessageStatus.CANCELLED,
    MessageStatus.EXPIRED,
})

# 只能由外部信号触发，内部永远不会产生
EXTERNAL_TERMINAL_STATUSES = frozenset({MessageStatus.CANCELLED, MessageStatus.EXPIRED})

ACTIVE_STATUSES = frozenset({MessageStatus.QUEUED, MessageStatus.PROCESSING})

# Self-transitions are allowed where re-applying the same update must be harmless
# (duplicate delivery, recovery re-queue, retry bookkeeping).
ALLOWED_TRANSITIONS = {
    MessageStatus.QUEUED: frozenset({
        MessageStatus.QUEUED,
        MessageStatus.PROCESSING,
        MessageStatus.FAILED,
        MessageStatus.COMPLETED,
        MessageStatus.CANCELLED,
        MessageStatus.EXPIRED,
    }),
    MessageStatus.PROCESSING: frozenset({
        MessageStatus.PROCESSING,
        MessageStatus.QUEUED,
        MessageStatus.COMPLETED,
        MessageStatus.FAILED,
        MessageStatus.CANCELLED,
        MessageStatus.EXPIRED,
    }),
    MessageStatus.COMPLETED: frozenset({MessageStatus.COMPLETED}),
    MessageStatus.FAILED: frozenset({MessageStatus.FAILED}),
    MessageStatus.CANCELLED: frozenset({MessageStatus.CANCELLED}),
    MessageStatus.EXPIRED: frozenset({MessageStatus.EXPIRED}),
}

# 旧版 producer 写入的状态
_LEGACY_ALIASES = {"in_progress": MessageStatus.PROCESSING}


def parse_status(value) -> Optional[MessageStatus]:
    if isinstance(value, MessageStatus):
        return value
    if value is None:
        return None
    if value in _LEGACY_ALIASES:
        return _LEGACY_ALIASES[value]
    try:
        return MessageStatus(value)
    except ValueError:
        return None


def can_transition(current, target) -> bool:
    current_status = parse_status(current)
    target_status = parse_status(target)
    if current_status is None or target_status is None:
        return False
    return target_status in ALLOWED_TRANSITIONS[current_status]


def is_terminal(status) -> bool:
    return parse_status(status) in TERMINAL_STATUSES
