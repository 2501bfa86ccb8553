"""Read-only views of the task registry for polling clients."""

from __future__ import annotations

from .models import CompositeStatusResponse, MediaTaskStatusResponse
from .task_registry import TaskRegistry


class StatusQueryService:
    def __init__(self, registry: TaskRegistry) -> None:
        self.registry = registry

    def get_media_task_status(self, task_id: str) -> MediaTaskStatusResponse:
        """
        Project a media task into its client-facing shape.

        Raises:
            TaskNotFound: If ``task_id`` was never issued
        """
        task = self.registry.get_media(task_id)
        return MediaTaskStatusResponse(
            task_id=task.id,
            kind=task.kind,
            status=task.status,
            result_url=task.result_url,
            error=task.error,
        )

    def get_composite_status(self, folder_name: str) -> CompositeStatusResponse:
        task = self.registry.get_composite(folder_name)
        return CompositeStatusResponse(
            folder_name=task.folder_name,
            status=task.status,
            video_urls=list(task.video_urls),
            error=task.error,
        )
