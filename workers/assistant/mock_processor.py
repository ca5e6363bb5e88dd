# workers/assistant/mock_processor.py
import threading
import uuid
from typing import Dict

from shared.logger import debug_log
from shared.schemas import InvocationRequest, InvocationResponse, PollResponse


class MockProcessor:
    """
    本地联调用的假处理服务 (--mock)
    Text-only requests answer immediately; requests with files go through
    ``polls_until_done`` rounds of "processing" first.
    """

    def __init__(self, polls_until_done: int = 2):
        self.polls_until_done = polls_until_done
        self._pending: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def invoke(self, request: InvocationRequest) -> InvocationResponse:
        debug_log(f"📥 [Mock] 收到请求: {request.message_id} | files={len(request.file_ids)}", "REQUEST")
        if request.is_text_only and not request.file_ids:
            return InvocationResponse(status="completed", content=self._reply(request))

        token = uuid.uuid4().hex
        with self._lock:
            self._pending[token] = {"request": request, "polls": 0}
        return InvocationResponse(status="processing", token=token)

    def poll(self, token: str) -> PollResponse:
        with self._lock:
            entry = self._pending.get(token)
            if entry is None:
                return PollResponse(status="failed", error="unknown token")
            entry["polls"] += 1
            if entry["polls"] < self.polls_until_done:
                return PollResponse(status="processing")
            del self._pending[token]

        request = entry["request"]
        return PollResponse(
            status="completed",
            result=self._reply(request),
            metadata={"files_analyzed": list(request.file_ids)},
        )

    def close(self):
        pass

    @staticmethod
    def _reply(request: InvocationRequest) -> str:
        return f"【AI回复】针对 '{request.query}' 的回答"
