# shared/logger.py
import logging
import sys
import traceback
from typing import Callable, Optional

from sqlalchemy.orm import Session

from shared.models import SystemLog

logger = logging.getLogger("pipeline")

_LEVELS = {
    "INFO": logging.INFO,
    "SUCCESS": logging.INFO,
    "REQUEST": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "DEBUG": logging.DEBUG,
}

_EMOJI = {
    "INFO": "ℹ️", "SUCCESS": "✅", "ERROR": "❌", "WARNING": "⚠️",
    "DEBUG": "🔍", "REQUEST": "📥"
}


def configure_logging(level: str = "INFO") -> None:
    """Attach a single console handler to the pipeline logger (safe to call twice)."""
    logger.setLevel(_LEVELS.get(level.upper(), logging.INFO))
    logger.propagate = False
    if any(getattr(h, "_pipeline_console", False) for h in logger.handlers):
        return

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    ))
    console._pipeline_console = True
    logger.addHandler(console)


def debug_log(message: str, level: str = "INFO"):
    """统一的日志输出"""
    level = level.upper()
    emoji = _EMOJI.get(level, "•")
    logger.log(_LEVELS.get(level, logging.INFO), f"{emoji} {message}")


def log_error(
        source: str,
        message: str,
        task_id: Optional[str] = None,
        error: Optional[BaseException] = None,
        session_factory: Optional[Callable[[], Session]] = None,
):
    """
    通用错误记录函数
    :param source: 来源 (如 "Worker-Assistant", "Recovery")
    :param message: 简短描述
    :param task_id: 关联的消息/任务ID (可选)
    :param error: 捕获的 Exception 对象 (可选)
    :param session_factory: 传入时把完整堆栈写入 sys_logs 表
    """
    display_msg = message if message else str(error)
    logger.error(f"❌ [{source}] TaskID: {task_id} | {display_msg}")
    if error:
        # 控制台只打印原因，详细堆栈留给数据库
        logger.error(f"   └── Reason: {error}")

    if session_factory is None:
        return

    db = session_factory()
    try:
        stack_trace = None
        if error:
            stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            if not message:
                message = str(error)

        db.add(SystemLog(
            level="ERROR",
            source=source,
            task_id=task_id,
            message=message,
            stack_trace=stack_trace,
        ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"⚠️ 严重：日志写入数据库失败! {e}")
    finally:
        db.close()


class ErrorSink:
    """Binds ``log_error`` to a session factory so components don't carry one around."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None, enabled: bool = True):
        self._session_factory = session_factory if enabled else None

    def __call__(self, source: str, message: str, task_id: Optional[str] = None,
                 error: Optional[BaseException] = None):
        log_error(source, message, task_id, error, session_factory=self._session_factory)
