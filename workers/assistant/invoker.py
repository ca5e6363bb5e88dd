# workers/assistant/invoker.py
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from shared.clock import Clock
from shared.errors import InvocationFailedError, InvocationInterrupted, PollTimeoutError, ProcessorError
from shared.logger import debug_log
from shared.schemas import InvocationRequest, InvocationResponse, JobPayload, PollResponse, parse_json_object


class ProcessorClient:
    """
    外部处理服务的 HTTP 客户端
    Any transport error, non-2xx status or unparseable body becomes a ProcessorError.
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 invoke_path: str = "/excel-assistant", poll_path: str = "/excel-assistant/status",
                 timeout: float = 120.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.invoke_path = invoke_path
        self.poll_path = poll_path.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def invoke(self, request: InvocationRequest) -> InvocationResponse:
        url = f"{self.base_url}{self.invoke_path}"
        try:
            response = self.session.post(url, json=request.to_json(), headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ProcessorError(f"连接处理服务失败: {e}") from e
        return self._validate(InvocationResponse, self._parse(response))

    def poll(self, token: str) -> PollResponse:
        url = f"{self.base_url}{self.poll_path}/{token}"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ProcessorError(f"轮询处理服务失败: {e}") from e
        return self._validate(PollResponse, self._parse(response))

    def close(self):
        self.session.close()

    @staticmethod
    def _parse(response: requests.Response) -> Dict[str, Any]:
        if not response.ok:
            raise ProcessorError(f"Processor HTTP {response.status_code}: {response.text[:200]}")
        try:
            return parse_json_object(response.text)
        except ValueError as e:
            raise ProcessorError(f"Processor returned invalid JSON: {e}") from e

    @staticmethod
    def _validate(model, data: Dict[str, Any]):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProcessorError(f"Unexpected processor response: {e.error_count()} validation error(s)") from e


@dataclass
class InvocationOutcome:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    poll_attempts: int = 0


class InvocationAdapter:
    """
    Calls the processor once, then polls on a fixed interval if it answered "processing".

    Raises:
      ProcessorError          transport / format problems (the job gets retried)
      InvocationFailedError   explicit failure from the processor
      PollTimeoutError        ``max_poll_attempts`` polls without a terminal answer
      InvocationInterrupted   ``stop_event`` fired while waiting between polls
    """

    def __init__(self, client, clock: Clock, poll_interval: float = 10.0, max_poll_attempts: int = 30):
        self._client = client
        self._clock = clock
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts

    def run(self, payload: JobPayload, message_id: str,
            stop_event: Optional[threading.Event] = None) -> InvocationOutcome:
        request = InvocationRequest.from_payload(message_id, payload)
        response = self._client.invoke(request)
        status = response.status.lower()

        if status == "completed":
            return self._finish(response.content, response.metadata, payload, poll_attempts=0)
        if status == "failed":
            raise InvocationFailedError(response.error or "processor reported failure")
        if status != "processing":
            raise ProcessorError(f"unexpected invoke status: {response.status}")

        # 没给 token 时用 message_id 轮询
        token = response.token or message_id
        debug_log(f"⏳ {message_id} 进入轮询 (每 {self.poll_interval}s，最多 {self.max_poll_attempts} 次)", "INFO")
        return self._poll_until_done(token, message_id, payload, stop_event)

    def _poll_until_done(self, token: str, message_id: str, payload: JobPayload,
                         stop_event: Optional[threading.Event]) -> InvocationOutcome:
        for attempt in range(1, self.max_poll_attempts + 1):
            if not self._clock.sleep(self.poll_interval, stop_event):
                raise InvocationInterrupted(f"shutdown while polling {message_id} (attempt {attempt})")

            result = self._client.poll(token)
            status = result.status.lower()
            if status == "completed":
                return self._finish(result.result, result.metadata, payload, poll_attempts=attempt)
            if status == "failed":
                raise InvocationFailedError(result.error or "processor reported failure")
            if status != "processing":
                raise ProcessorError(f"unexpected poll status: {result.status}")
            debug_log(f"{message_id} 仍在处理中 ({attempt}/{self.max_poll_attempts})", "DEBUG")

        raise PollTimeoutError(self.max_poll_attempts)

    @staticmethod
    def _finish(content: Optional[str], metadata: Dict[str, Any], payload: JobPayload,
                poll_attempts: int) -> InvocationOutcome:
        content = content or ""
        if not content.strip() and payload.expects_content:
            raise ProcessorError("processor completed without content")
        return InvocationOutcome(content=content, metadata=dict(metadata or {}), poll_attempts=poll_attempts)
