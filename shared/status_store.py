# shared/status_store.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.clock import Clock, iso_from_timestamp, utc_from_timestamp
from shared.errors import GENERIC_FAILURE_MESSAGE, QUEUE_FAILED_ERROR, StoreConflictError
from shared.logger import debug_log
from shared.models import ChatMessage, MessageFile
from shared.schemas import JobEnvelope, ProcessingStage, StatusUpdate
from shared.status import (
    ACTIVE_STATUSES,
    EXTERNAL_TERMINAL_STATUSES,
    MessageStatus,
    Stage,
    can_transition,
    parse_status,
)


@dataclass
class MessageSnapshot:
    id: str
    session_id: str
    user_id: Optional[str]
    role: str
    status: str
    content: str
    metadata: Dict[str, Any]
    version: int
    created_at: datetime
    updated_at: Optional[datetime]
    file_ids: List[str] = field(default_factory=list)

    @property
    def message_status(self) -> Optional[MessageStatus]:
        return parse_status(self.status)

    @property
    def processing_stage(self) -> Dict[str, Any]:
        return dict(self.metadata.get("processing_stage") or {})

    @property
    def last_activity(self) -> datetime:
        return self.updated_at or self.created_at


def merge_metadata(current: Optional[Dict[str, Any]], update: StatusUpdate, now: float) -> Dict[str, Any]:
    """
    Additive merge: top-level keys are patched, processing_stage is merged
    key by key so concurrent writers never wipe each other's trace.
    """
    merged = dict(current or {})
    merged.update(update.metadata_patch)

    stage = dict(merged.get("processing_stage") or {})
    if update.stage is not None:
        stage.update(update.stage.as_patch())
    stage["last_updated"] = iso_from_timestamp(now)
    merged["processing_stage"] = stage
    merged["worker_heartbeat"] = iso_from_timestamp(now)
    return merged


def _snapshot(row: ChatMessage) -> MessageSnapshot:
    meta = dict(row.meta or {})
    file_ids = [f.file_id for f in row.files]
    for file_id in meta.get("file_ids") or []:
        if file_id not in file_ids:
            file_ids.append(file_id)
    return MessageSnapshot(
        id=row.id,
        session_id=row.session_id,
        user_id=row.user_id,
        role=row.role,
        status=row.status,
        content=row.content or "",
        metadata=meta,
        version=row.version or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
        file_ids=file_ids,
    )


class StatusStore:
    """
    Typed access to chat_messages. Every write is a conditional UPDATE on the
    row version (optimistic concurrency) so merges are never lost.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Clock, max_conflict_retries: int = 5):
        self._session_factory = session_factory
        self._clock = clock
        self._max_conflict_retries = max_conflict_retries

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    # ------------------------------------------------------------------ reads

    def get_message(self, message_id: str) -> Optional[MessageSnapshot]:
        db = self._session_factory()
        try:
            row = db.get(ChatMessage, message_id)
            return _snapshot(row) if row else None
        finally:
            db.close()

    def find_stale(self, statuses: Iterable[MessageStatus], older_than: float, limit: int = 100,
                   after: Optional[Tuple[datetime, str]] = None) -> List[MessageSnapshot]:
        """
        Rows in ``statuses`` whose last activity is before the ``older_than`` timestamp,
        ordered by (last activity, id).
        :param after: cursor ``(last_activity, id)`` of the last row of the previous page
        """
        raw_statuses = [MessageStatus(s).value for s in statuses]
        if MessageStatus.PROCESSING.value in raw_statuses:
            raw_statuses.append("in_progress")

        cutoff = utc_from_timestamp(older_than)
        last_activity = func.coalesce(ChatMessage.updated_at, ChatMessage.created_at)
        db = self._session_factory()
        try:
            query = db.query(ChatMessage).filter(ChatMessage.status.in_(raw_statuses), last_activity < cutoff)
            if after is not None:
                after_activity, after_id = after
                query = query.filter(or_(
                    last_activity > after_activity,
                    and_(last_activity == after_activity, ChatMessage.id > after_id),
                ))
            rows = query.order_by(last_activity.asc(), ChatMessage.id.asc()).limit(limit).all()
            return [_snapshot(r) for r in rows]
        finally:
            db.close()

    def iter_stale(self, statuses: Iterable[MessageStatus], older_than: float,
                   page_size: int = 100) -> Iterator[MessageSnapshot]:
        """Pages through ``find_stale`` so callers can walk past rows they decide to skip."""
        statuses = list(statuses)
        cursor = None
        while True:
            page = self.find_stale(statuses, older_than, page_size, after=cursor)
            yield from page
            if len(page) < page_size:
                return
            cursor = (page[-1].last_activity, page[-1].id)

    def find_source_query(self, message: MessageSnapshot) -> Optional[Tuple[str, List[str]]]:
        """
        找到生成这条消息所需的原始提问
        - user 消息：自己的内容
        - assistant 消息：入队时存下的 metadata.query；没有时退回到同一会话中更早的最近一条 user 消息
        """
        if message.role != "assistant":
            if message.content:
                return message.content, list(message.file_ids)
            return None

        query = message.metadata.get("query")
        if query:
            return query, list(message.file_ids)

        db = self._session_factory()
        try:
            user_row = (
                db.query(ChatMessage)
                .filter(
                    ChatMessage.session_id == message.session_id,
                    ChatMessage.role == "user",
                    ChatMessage.id != message.id,
                    ChatMessage.created_at <= message.created_at,
                )
                .order_by(ChatMessage.created_at.desc())
                .first()
            )
            if user_row is None or not user_row.content:
                return None
            user_snapshot = _snapshot(user_row)
            return user_snapshot.content, user_snapshot.file_ids or list(message.file_ids)
        finally:
            db.close()

    # ----------------------------------------------------------------- writes

    def create_message(self, message_id: str, session_id: str, user_id: Optional[str] = None,
                       role: str = "assistant", content: str = "", file_ids: Iterable[str] = (),
                       metadata: Optional[Dict[str, Any]] = None) -> MessageSnapshot:
        """Insert a row in ``queued`` status; returns the existing row if the id is taken."""
        db = self._session_factory()
        try:
            existing = db.get(ChatMessage, message_id)
            if existing is not None:
                return _snapshot(existing)

            now = utc_from_timestamp(self._clock.now())
            row = ChatMessage(
                id=message_id,
                session_id=session_id,
                user_id=user_id,
                role=role,
                status=MessageStatus.QUEUED.value,
                content=content or "",
                meta=dict(metadata or {}),
                version=0,
                created_at=now,
                updated_at=now,
            )
            row.files = [MessageFile(file_id=f) for f in dict.fromkeys(file_ids)]
            db.add(row)
            db.commit()
            return _snapshot(row)
        except IntegrityError:
            # 并发插入，别人先写进去了
            db.rollback()
            existing = db.get(ChatMessage, message_id)
            if existing is None:
                raise
            return _snapshot(existing)
        finally:
            db.close()

    def apply_update(self, message_id: str, update: StatusUpdate,
                     expected_statuses: Optional[Iterable[MessageStatus]] = None,
                     expected_version: Optional[int] = None,
                     fallback_content: Optional[str] = None) -> bool:
        """
        :param expected_statuses: row-level guard, the update is skipped unless the current status is one of these
        :param expected_version: row-level guard against any write since the caller read the row
        :param fallback_content: written only when the row has no content yet (partial output is kept)
        :return: True if the row was written
        """
        target = parse_status(update.status)
        if target is None:
            raise ValueError(f"unknown status: {update.status}")
        allowed = frozenset(expected_statuses) if expected_statuses is not None else None

        for _ in range(self._max_conflict_retries):
            db = self._session_factory()
            try:
                row = (
                    db.query(ChatMessage.status, ChatMessage.meta, ChatMessage.version, ChatMessage.content)
                    .filter(ChatMessage.id == message_id)
                    .first()
                )
                if row is None:
                    debug_log(f"更新状态时未找到消息: {message_id}", "WARNING")
                    return False

                current_status, current_meta, version, current_content = row
                version = version or 0
                if expected_version is not None and version != expected_version:
                    return False
                if allowed is not None and parse_status(current_status) not in allowed:
                    return False
                if not can_transition(current_status, target):
                    debug_log(f"✋ 拒绝状态流转 {message_id}: {current_status} -> {target.value}", "WARNING")
                    return False

                now = self._clock.now()
                values = {
                    ChatMessage.status: target.value,
                    ChatMessage.meta: merge_metadata(current_meta, update, now),
                    ChatMessage.version: version + 1,
                    ChatMessage.updated_at: utc_from_timestamp(now),
                }
                if update.content is not None:
                    values[ChatMessage.content] = update.content
                elif fallback_content is not None and not current_content:
                    values[ChatMessage.content] = fallback_content

                result = (
                    db.query(ChatMessage)
                    .filter(ChatMessage.id == message_id, ChatMessage.version == version)
                    .update(values, synchronize_session=False)
                )
                db.commit()
                if result == 1:
                    return True
                debug_log(f"🔁 版本冲突，重试更新: {message_id}", "DEBUG")
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        raise StoreConflictError(f"could not update {message_id} after {self._max_conflict_retries} attempts")

    # ------------------------------------------------------ named transitions

    def mark_processing(self, message_id: str, envelope: JobEnvelope, worker_id: str) -> bool:
        now_iso = iso_from_timestamp(self._clock.now())
        stage = ProcessingStage(
            stage=Stage.WORKER_PROCESSING,
            started_at=now_iso,
            worker_started_at=now_iso,
            worker_job_id=envelope.job_id,
            worker_id=worker_id,
            attempt=envelope.attempt,
            has_files=bool(envelope.payload.file_ids),
            is_text_only=envelope.payload.is_text_only,
        )
        return self.apply_update(
            message_id,
            StatusUpdate(status=MessageStatus.PROCESSING.value, stage=stage),
            expected_statuses=ACTIVE_STATUSES,
        )

    def mark_retrying(self, message_id: str, attempt: int, next_attempt_at: float, error: str) -> bool:
        stage = ProcessingStage(
            stage=Stage.RETRYING,
            error=error,
            attempt=attempt,
            next_attempt_at=iso_from_timestamp(next_attempt_at),
        )
        return self.apply_update(
            message_id,
            StatusUpdate(status=MessageStatus.QUEUED.value, stage=stage),
            expected_statuses=ACTIVE_STATUSES,
        )

    def mark_completed(self, message_id: str, content: str,
                       usage: Optional[Dict[str, Any]] = None, **stage_fields) -> bool:
        stage = ProcessingStage(
            stage=Stage.WORKER_COMPLETED,
            completion_percentage=100,
            completed_at=iso_from_timestamp(self._clock.now()),
            **stage_fields,
        )
        patch = {"usage": usage} if usage else {}
        return self.apply_update(
            message_id,
            StatusUpdate(status=MessageStatus.COMPLETED.value, content=content, stage=stage, metadata_patch=patch),
        )

    def mark_failed(self, message_id: str, error: str, stage: str = Stage.WORKER_FAILED,
                    fallback_content: Optional[str] = GENERIC_FAILURE_MESSAGE,
                    expected_version: Optional[int] = None, **stage_fields) -> bool:
        """
        Partial content is never cleared; ``fallback_content`` only fills an empty row.
        ``error`` must already be a user-safe string.
        """
        failed = ProcessingStage(
            stage=stage,
            error=error,
            failed_at=iso_from_timestamp(self._clock.now()),
            **stage_fields,
        )
        return self.apply_update(
            message_id,
            StatusUpdate(status=MessageStatus.FAILED.value, stage=failed),
            expected_version=expected_version,
            fallback_content=fallback_content,
        )

    def mark_recovery_queued(self, message_id: str, previous_status: str, job_id: str,
                             expected_version: Optional[int] = None) -> bool:
        now = self._clock.now()
        stage = ProcessingStage(
            stage=Stage.RECOVERY_QUEUED,
            recovered_from=previous_status,
            recovery_job_id=job_id,
        )
        patch = {"recovery": {"recovered_at": iso_from_timestamp(now), "original_status": previous_status}}
        return self.apply_update(
            message_id,
            StatusUpdate(status=MessageStatus.QUEUED.value, stage=stage, metadata_patch=patch),
            expected_statuses=ACTIVE_STATUSES,
            expected_version=expected_version,
        )

    def mark_queued(self, message_id: str, job_id: str, max_attempts: int) -> bool:
        stage = ProcessingStage(
            stage=Stage.QUEUED,
            queued_at=iso_from_timestamp(self._clock.now()),
            job_id=job_id,
            max_attempts=max_attempts,
        )
        return self.apply_update(
            message_id,
            StatusUpdate(status=MessageStatus.QUEUED.value, stage=stage),
            expected_statuses=ACTIVE_STATUSES,
        )

    def mark_queue_failed(self, message_id: str) -> bool:
        return self.mark_failed(message_id, QUEUE_FAILED_ERROR, stage=Stage.QUEUE_FAILED)

    def signal_terminal(self, message_id: str, status: MessageStatus, reason: Optional[str] = None) -> bool:
        """External cancel/expire signal; the pipeline itself never calls this."""
        status = MessageStatus(status)
        if status not in EXTERNAL_TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not an externally signalled status")
        stage = ProcessingStage(stage=status.value, error=reason)
        return self.apply_update(message_id, StatusUpdate(status=status.value, stage=stage))
