"""Error taxonomy for job submission, polling and the product pipeline."""

from typing import Any, Optional


class VideoGenError(Exception):
    """Base class for everything raised by videogen."""


class InvalidJobParams(VideoGenError, ValueError):
    """Submission parameters rejected before any network call."""


class RemoteJobError(VideoGenError):
    """Error status (or network failure) returned by the remote service."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: bool = False,
        payload: Any = None,
    ):
        self.message = message
        self.status = status
        self.retryable = retryable
        self.payload = payload
        super().__init__(f"{message} (status: {status if status is not None else 'N/A'})")


class ServiceOverloaded(RemoteJobError):
    """Capacity-saturated 500 that outlived the client's retry budget."""

    def __init__(self, message: str, attempts: int, payload: Any = None):
        self.attempts = attempts
        super().__init__(message, status=500, retryable=True, payload=payload)


class TransformError(RemoteJobError):
    """Transform reply carried neither a usable image nor text."""

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text
        super().__init__(f"{message}. Response: {raw_text[:500]}")


class ImageResolutionError(VideoGenError):
    """A batch row's image source could not be turned into a hosted URL."""


class StageError(VideoGenError):
    """Pipeline failure attributed to one stage ("stage1", "stage2", "stage3")."""

    def __init__(self, stage: str, cause: BaseException | str):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")

    @property
    def status(self) -> Optional[int]:
        return getattr(self.cause, "status", None)


class PollTimeout(VideoGenError):
    """Waiting for a task exceeded its bound; the task may still finish."""

    def __init__(self, task_id: str, timeout: float):
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"task {task_id} still running after {timeout:.0f}s")


class PipelineTimeout(PollTimeout):
    """Model-dependent pipeline bound exceeded. Not a job failure."""


class InvalidCharacterParams(VideoGenError, ValueError):
    """Character clip window or source rejected before any network call."""
