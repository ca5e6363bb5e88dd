# schemas.py
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.errors import MalformedJobError


class JobPayload(BaseModel):
    query: str
    user_id: Optional[str] = None
    session_id: str
    file_ids: List[str] = Field(default_factory=list)
    is_text_only: bool = True
    is_recovery: bool = False
    # 部分操作成功时本来就没有文本输出
    expects_content: bool = True


class JobEnvelope(BaseModel):
    """
    队列里的最小调度单元
    One envelope per enqueue; ``message_id`` is the correlation/idempotency key.
    """
    job_id: str
    message_id: str
    payload: JobPayload
    attempt: int = 0
    max_attempts: int = 3
    priority: int = 0
    enqueued_at: float

    @classmethod
    def new(cls, message_id: str, payload: JobPayload, now: float,
            max_attempts: int = 3, priority: int = 0) -> "JobEnvelope":
        return cls(
            job_id=f"{message_id}:{int(now * 1000)}",
            message_id=message_id,
            payload=payload,
            max_attempts=max_attempts,
            priority=priority,
            enqueued_at=now,
        )

    @classmethod
    def for_recovery(cls, message_id: str, payload: JobPayload, now: float,
                     max_attempts: int = 2, priority: int = 10) -> "JobEnvelope":
        # recovery 任务的 job_id 带后缀，跟原始 job 区分开
        payload = payload.model_copy(update={"is_recovery": True})
        return cls(
            job_id=f"{message_id}:recovery:{int(now * 1000)}",
            message_id=message_id,
            payload=payload,
            max_attempts=max_attempts,
            priority=priority,
            enqueued_at=now,
        )

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, raw) -> "JobEnvelope":
        if raw is None or raw == "" or raw == b"":
            raise MalformedJobError("Empty Payload")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedJobError(f"Invalid job envelope: {e.error_count()} validation error(s)") from e


class ProcessingStage(BaseModel):
    """Partial progress trace; only the fields that are set get merged into the row."""
    model_config = ConfigDict(extra="allow")

    stage: str
    started_at: Optional[str] = None
    completion_percentage: Optional[float] = None
    error: Optional[str] = None

    def as_patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class StatusUpdate(BaseModel):
    status: str
    content: Optional[str] = None
    stage: Optional[ProcessingStage] = None
    # 顶层 metadata 的浅合并补丁 (例如 usage / recovery 信息)
    metadata_patch: Dict[str, Any] = Field(default_factory=dict)


class InvocationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    query: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    session_id: str = Field(alias="sessionId")
    file_ids: List[str] = Field(default_factory=list, alias="fileIds")
    is_text_only: bool = Field(default=True, alias="isTextOnly")

    @classmethod
    def from_payload(cls, message_id: str, payload: JobPayload) -> "InvocationRequest":
        return cls(
            message_id=message_id,
            query=payload.query,
            user_id=payload.user_id,
            session_id=payload.session_id,
            file_ids=list(payload.file_ids),
            is_text_only=payload.is_text_only,
        )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class InvocationResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    content: Optional[str] = None
    token: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PollResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    result: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def parse_json_object(raw_text: str) -> Dict[str, Any]:
    data = json.loads(raw_text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data
