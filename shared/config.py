# shared/config.py
import os
import socket
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# 项目根目录 (shared/ -> root)
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class RetryPolicy(BaseModel):
    """Bounded exponential backoff used by the queue when a job is nacked."""

    initial_delay: float = 5.0
    growth_factor: float = 2.0
    max_delay: float = 300.0

    def delay_for(self, attempt: int) -> float:
        """
        Delay before redelivery of a job that just failed its ``attempt``-th try (0-based).
        """
        # growth < 1 would make delays shrink
        delay = self.initial_delay * (max(self.growth_factor, 1.0) ** max(attempt, 0))
        return min(delay, self.max_delay)


class Settings(BaseModel):
    # --- Backing stores ---
    redis_url: str = "redis://127.0.0.1:6379/0"
    database_url: str = "sqlite:///./pipeline.db"

    # --- External processor ---
    processor_base_url: str = "http://localhost:54321/functions/v1"
    processor_token: Optional[str] = None
    processor_invoke_path: str = "/excel-assistant"
    processor_poll_path: str = "/excel-assistant/status"
    request_timeout: float = 120.0

    # --- Queue / workers ---
    queue_name: str = "message-processing"
    worker_id: str = ""
    worker_concurrency: int = 5
    rate_limit_max: int = 20
    rate_limit_window_seconds: float = 60.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 5.0
    retry_growth_factor: float = 2.0
    retry_max_delay: float = 300.0
    lease_seconds: float = 60.0
    lease_heartbeat_seconds: float = 20.0
    idle_backoff_seconds: float = 1.0
    error_backoff_seconds: float = 5.0

    # --- Polling ---
    poll_interval_seconds: float = 10.0
    poll_max_attempts: int = 30

    # --- Recovery ---
    recovery_threshold_seconds: float = 300.0
    recovery_check_interval: float = 300.0
    recovery_priority: int = 10
    recovery_max_attempts: int = 2
    janitor_threshold_seconds: float = 900.0

    # --- Logging ---
    enable_db_log: bool = True
    log_level: str = "INFO"

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            initial_delay=self.retry_initial_delay,
            growth_factor=self.retry_growth_factor,
            max_delay=self.retry_max_delay,
        )

    @property
    def consumer_name(self) -> str:
        return f"worker-{self.worker_id or _default_worker_id()}"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """
        读取环境变量构建配置 (先加载根目录的 .env)
        Numeric values that are missing, unparsable or non-positive keep their defaults.
        """
        env_path = Path(env_file) if env_file else PROJECT_ROOT / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        defaults = cls()
        return cls(
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            processor_base_url=os.getenv("PROCESSOR_BASE_URL", defaults.processor_base_url),
            processor_token=os.getenv("PROCESSOR_TOKEN") or None,
            processor_invoke_path=os.getenv("PROCESSOR_INVOKE_PATH", defaults.processor_invoke_path),
            processor_poll_path=os.getenv("PROCESSOR_POLL_PATH", defaults.processor_poll_path),
            request_timeout=_env_float("PROCESSOR_TIMEOUT_SECONDS", defaults.request_timeout),
            queue_name=os.getenv("QUEUE_NAME", defaults.queue_name),
            worker_id=os.getenv("WORKER_ID", ""),
            worker_concurrency=_env_int("MAX_CONCURRENT_JOBS", defaults.worker_concurrency),
            rate_limit_max=_env_int("RATE_LIMIT_MAX", defaults.rate_limit_max),
            rate_limit_window_seconds=_env_float("RATE_LIMIT_WINDOW_SECONDS", defaults.rate_limit_window_seconds),
            retry_max_attempts=_env_int("MAX_RETRY_COUNT", defaults.retry_max_attempts),
            retry_initial_delay=_env_float("RETRY_INITIAL_DELAY_SECONDS", defaults.retry_initial_delay),
            retry_growth_factor=_env_float("RETRY_GROWTH_FACTOR", defaults.retry_growth_factor),
            retry_max_delay=_env_float("RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay),
            lease_seconds=_env_float("LEASE_SECONDS", defaults.lease_seconds),
            lease_heartbeat_seconds=_env_float("LEASE_HEARTBEAT_SECONDS", defaults.lease_heartbeat_seconds),
            idle_backoff_seconds=_env_float("WORKER_IDLE_BACKOFF_SECONDS", defaults.idle_backoff_seconds),
            error_backoff_seconds=_env_float("WORKER_ERROR_BACKOFF_SECONDS", defaults.error_backoff_seconds),
            poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds),
            poll_max_attempts=_env_int("POLL_MAX_ATTEMPTS", defaults.poll_max_attempts),
            recovery_threshold_seconds=_env_float("RECOVERY_THRESHOLD_SECONDS", defaults.recovery_threshold_seconds),
            recovery_check_interval=_env_float("RECOVERY_CHECK_INTERVAL", defaults.recovery_check_interval),
            recovery_priority=_env_int("RECOVERY_PRIORITY", defaults.recovery_priority),
            recovery_max_attempts=_env_int("RECOVERY_MAX_ATTEMPTS", defaults.recovery_max_attempts),
            janitor_threshold_seconds=_env_float("JANITOR_THRESHOLD_SECONDS", defaults.janitor_threshold_seconds),
            enable_db_log=os.getenv("ENABLE_DB_LOG", "True").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )


def _default_worker_id() -> str:
    # 兜底逻辑: 没有 WORKER_ID 时用 主机名-进程号
    return f"{socket.gethostname()}-{os.getpid()}"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default
