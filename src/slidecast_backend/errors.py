"""
Exception taxonomy for the Slidecast pipeline.

Errors raised while an upload request is being served (validation,
conversion, storage) propagate to the HTTP layer, which maps them to status
codes. Errors raised by the detached background run are captured into the
task records instead and never escape the event loop.
"""

from __future__ import annotations

from typing import Optional


class SlidecastError(Exception):
    """Base class for pipeline errors."""


class InvalidFileType(SlidecastError):
    """Raised when an uploaded document is not on the extension allow-list."""

    def __init__(self, extension: str, allowed: list[str]) -> None:
        self.extension = extension
        self.allowed = list(allowed)
        super().__init__(f"Invalid file type '{extension or '<none>'}'. Allowed: {', '.join(self.allowed)}")


class InvalidInputKind(InvalidFileType):
    """Raised by the conversion adapter for a source it cannot convert."""


class ConversionFailed(SlidecastError):
    """Raised when the document-to-PDF converter fails."""


class RasterizationFailed(SlidecastError):
    """Raised when the PDF-to-image rasterizer fails or produces no pages."""


class CompositionFailed(SlidecastError):
    """Raised when per-slide composition cannot proceed."""


class StorageUploadFailed(SlidecastError):
    """Raised when a blob upload keeps failing after all attempts."""

    def __init__(self, bucket: str, key: str, attempts: int, last_error: BaseException) -> None:
        self.bucket = bucket
        self.key = key
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Upload of {bucket}/{key} failed after {attempts} attempts: {last_error}")


class UnexpectedResponseType(SlidecastError):
    """Raised when a remote service answers with the wrong content type."""

    def __init__(self, content_type: Optional[str], expected: str) -> None:
        self.content_type = content_type
        self.expected = expected
        super().__init__(f"Unexpected response type: {content_type}. Expected {expected}")


class RemoteJobFailed(SlidecastError):
    """Raised when a remote job submission is abandoned."""

    def __init__(
        self,
        endpoint: str,
        attempts: int,
        last_error: BaseException,
        status_code: Optional[int] = None,
    ) -> None:
        self.endpoint = endpoint
        self.attempts = attempts
        self.last_error = last_error
        self.status_code = status_code
        super().__init__(f"Remote job at {endpoint} failed after {attempts} attempt(s): {last_error}")


class TaskNotFound(SlidecastError, KeyError):
    """Raised when a task or folder identifier was never registered."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class InvalidTaskTransition(SlidecastError):
    """Raised when a task update would move a record backwards."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id} cannot move from {current} to {requested}")
