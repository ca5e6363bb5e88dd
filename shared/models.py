# models.py
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, BigInteger, ForeignKey, Index
from sqlalchemy.orm import relationship

from shared.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemLog(Base):
    """
    系统日志表
    用于记录详细的报错堆栈，方便开发者排查问题
    """
    __tablename__ = "sys_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True, autoincrement=True)

    # 日志级别: INFO, ERROR, WARNING
    level = Column(String, default="INFO", index=True)

    # 来源: "Worker-Assistant", "Recovery", "Janitor"
    source = Column(String, index=True)

    # 关联的消息ID
    task_id = Column(String, index=True, nullable=True)

    message = Column(Text)
    stack_trace = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow)


class ChatMessage(Base):
    """
    A user-visible chat message. Assistant rows are the unit of work the
    pipeline fills in; their id doubles as the job idempotency key.
    """
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True)
    session_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)

    # user / assistant / system
    role = Column(String, default="assistant", nullable=False)

    # queued / processing / completed / failed / cancelled / expired
    status = Column(String, default="queued", index=True, nullable=False)
    content = Column(Text, default="", nullable=False)

    # `metadata` 是 Declarative 保留名，属性名用 meta
    meta = Column("metadata", JSON, nullable=True)

    # 乐观锁版本号
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=True)

    files = relationship("MessageFile", back_populates="message", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_chat_messages_status_updated", "status", "updated_at"),
    )


class MessageFile(Base):
    """Input artifacts attached to a message; ids are passed through to the processor untouched."""
    __tablename__ = "message_files"

    message_id = Column(String, ForeignKey("chat_messages.id"), primary_key=True)
    file_id = Column(String, primary_key=True)

    message = relationship("ChatMessage", back_populates="files")
