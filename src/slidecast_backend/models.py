from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MediaKind(str, Enum):
    AUDIO = "audio"
    ANIMATION = "animation"


class MediaStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CompositeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ApiModel(BaseModel):
    """Base for payloads exchanged with the frontend, which uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadResult(ApiModel):
    folder_name: str
    image_urls: List[str]
    document_url: str
    pdf_url: str
    user_image_url: Optional[str] = None
    audio_task_id: str
    animation_task_id: Optional[str] = None


class MediaTaskStatusResponse(ApiModel):
    task_id: str
    kind: MediaKind
    status: MediaStatus
    result_url: Optional[str] = None
    error: Optional[str] = None


class CompositeStatusResponse(ApiModel):
    folder_name: str
    status: CompositeStatus
    video_urls: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class AskRequest(ApiModel):
    question: str = Field(min_length=1, max_length=500)


class AskResponse(ApiModel):
    audio_url: str
    timestamp: int
