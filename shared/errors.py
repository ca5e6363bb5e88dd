# shared/errors.py

# --- 用户可见的固定文案 (绝不包含底层异常信息) ---
GENERIC_FAILURE_MESSAGE = "Processing failed. Please try again."
ASSISTANT_APOLOGY_MESSAGE = (
    "Sorry, I wasn't able to finish this response. Please try sending your message again."
)
POLL_TIMEOUT_ERROR = "Timed out waiting for completion"
RETRIES_EXHAUSTED_ERROR = "Processing failed after repeated attempts"
PROCESSOR_FAILED_ERROR = "The assistant could not complete this request"
USER_TIMEOUT_ERROR = "Message processing timed out"
RECOVERY_NO_QUERY_ERROR = "Recovery failed: could not find original user query"
QUEUE_FAILED_ERROR = "Message could not be queued for processing"


class PipelineError(Exception):
    pass


class QueueUnavailableError(PipelineError):
    """The queue backing store could not be reached."""


class StoreConflictError(PipelineError):
    """Optimistic update kept losing to concurrent writers."""


class MalformedJobError(PipelineError):
    pass


class ProcessorError(PipelineError):
    """Transport, HTTP or response-format failure talking to the external processor."""


class InvocationFailedError(PipelineError):
    """The processor explicitly reported that the request failed."""


class PollTimeoutError(PipelineError):
    def __init__(self, attempts: int):
        super().__init__(f"{POLL_TIMEOUT_ERROR} after {attempts} poll attempts")
        self.attempts = attempts


class InvocationInterrupted(PipelineError):
    """Shutdown was requested while waiting between poll attempts."""
