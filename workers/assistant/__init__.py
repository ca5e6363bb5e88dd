# workers/assistant/__init__.py

# 1. 外部调用
from .invoker import InvocationAdapter, InvocationOutcome, ProcessorClient
from .mock_processor import MockProcessor

# 2. 任务执行
from .message_worker import JobOutcome, MessageJobHandler, fail_exhausted_job
from .pool import PoolState, WorkerPool
