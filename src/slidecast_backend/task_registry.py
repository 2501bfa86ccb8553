"""
In-memory task registry for media and composite tasks.

The registry holds two independent kinds of record:

- ``MediaTask``: one remote media generation (audio or animation), keyed by a
  generated task id
- ``CompositeTask``: the per-slide video composition of one upload, keyed by
  the upload's folder name

Records are frozen dataclasses and every update replaces the whole record, so
a reader sees either the previous or the next state, never a mix. All access
happens on one asyncio event loop, so no lock is needed. Records live for the
lifetime of the process; nothing is persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional

from .errors import InvalidTaskTransition, TaskNotFound
from .models import CompositeStatus, MediaKind, MediaStatus

logger = logging.getLogger(__name__)

MEDIA_TRANSITIONS: Dict[MediaStatus, frozenset[MediaStatus]] = {
    MediaStatus.PROCESSING: frozenset({MediaStatus.COMPLETED, MediaStatus.FAILED}),
    MediaStatus.COMPLETED: frozenset(),
    MediaStatus.FAILED: frozenset(),
}

COMPOSITE_TRANSITIONS: Dict[CompositeStatus, frozenset[CompositeStatus]] = {
    CompositeStatus.PENDING: frozenset({CompositeStatus.PROCESSING, CompositeStatus.SKIPPED, CompositeStatus.FAILED}),
    CompositeStatus.PROCESSING: frozenset({CompositeStatus.COMPLETED, CompositeStatus.FAILED}),
    CompositeStatus.COMPLETED: frozenset(),
    CompositeStatus.SKIPPED: frozenset(),
    CompositeStatus.FAILED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MediaTask:
    """
    State of one remote media generation.

    Attributes:
        id: Unique task identifier (hex UUID), never reused
        kind: Audio or animation
        status: processing, completed or failed
        result_url: Public URL of the generated artifact, set only when completed
        error: Failure message, set only when failed
    """

    id: str
    kind: MediaKind
    status: MediaStatus = MediaStatus.PROCESSING
    result_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class CompositeTask:
    """
    State of the final per-slide video composition for one upload.

    ``video_urls`` is ordered by slide number and stays empty unless the task
    completed.
    """

    folder_name: str
    status: CompositeStatus = CompositeStatus.PENDING
    video_urls: tuple[str, ...] = ()
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return not COMPOSITE_TRANSITIONS[self.status]


class TaskRegistry:
    """Process-wide store of task records, constructed once and injected."""

    def __init__(self) -> None:
        self._media: Dict[str, MediaTask] = {}
        self._composites: Dict[str, CompositeTask] = {}

    def get_media(self, task_id: str) -> MediaTask:
        try:
            return self._media[task_id]
        except KeyError:
            raise TaskNotFound(task_id) from None

    def put_media(self, task: MediaTask) -> None:
        current = self._media.get(task.id)
        if current is not None and task.status not in MEDIA_TRANSITIONS[current.status]:
            raise InvalidTaskTransition(task.id, current.status.value, task.status.value)
        self._media[task.id] = task

    def get_composite(self, folder_name: str) -> CompositeTask:
        try:
            return self._composites[folder_name]
        except KeyError:
            raise TaskNotFound(folder_name) from None

    def put_composite(self, task: CompositeTask) -> None:
        current = self._composites.get(task.folder_name)
        if current is not None and task.status not in COMPOSITE_TRANSITIONS[current.status]:
            raise InvalidTaskTransition(task.folder_name, current.status.value, task.status.value)
        self._composites[task.folder_name] = task

    def start_media(self, task_id: str, kind: MediaKind) -> MediaTask:
        """Reserve a task id in the ``processing`` state."""
        if task_id in self._media:
            raise InvalidTaskTransition(task_id, self._media[task_id].status.value, MediaStatus.PROCESSING.value)
        task = MediaTask(id=task_id, kind=kind)
        self.put_media(task)
        return task

    def complete_media(self, task_id: str, result_url: str) -> MediaTask:
        task = replace(
            self.get_media(task_id),
            status=MediaStatus.COMPLETED,
            result_url=result_url,
            error=None,
            updated_at=_utcnow(),
        )
        self.put_media(task)
        return task

    def fail_media(self, task_id: str, error: str) -> MediaTask:
        task = replace(
            self.get_media(task_id),
            status=MediaStatus.FAILED,
            result_url=None,
            error=error or "Unknown error",
            updated_at=_utcnow(),
        )
        self.put_media(task)
        return task

    def open_composite(self, folder_name: str) -> CompositeTask:
        """Register the composite task of a new upload as ``pending``."""
        if folder_name in self._composites:
            raise InvalidTaskTransition(
                folder_name, self._composites[folder_name].status.value, CompositeStatus.PENDING.value
            )
        task = CompositeTask(folder_name=folder_name)
        self.put_composite(task)
        return task

    def advance_composite(
        self,
        folder_name: str,
        status: CompositeStatus,
        video_urls: tuple[str, ...] = (),
        error: Optional[str] = None,
    ) -> CompositeTask:
        task = replace(
            self.get_composite(folder_name),
            status=status,
            video_urls=tuple(video_urls) if status is CompositeStatus.COMPLETED else (),
            error=(error or "Unknown error") if status is CompositeStatus.FAILED else None,
            updated_at=_utcnow(),
        )
        self.put_composite(task)
        logger.info(f"Composite task {folder_name} is now {status.value}")
        return task
