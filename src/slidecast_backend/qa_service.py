"""
Question answering: forward a question to the remote Q&A speech service and
publish the spoken answer.

This path is synchronous from the client's point of view and does not touch
the task registry.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable

from omegaconf import DictConfig

from .blob_store import BlobStoreClient
from .models import AskResponse
from .remote_jobs import RemoteJobClient

logger = logging.getLogger(__name__)


class QuestionAnswerService:
    def __init__(
        self,
        config: DictConfig,
        blob_store: BlobStoreClient,
        remote_jobs: RemoteJobClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.blob_store = blob_store
        self.remote_jobs = remote_jobs
        self._clock = clock

    async def ask(self, question: str) -> AskResponse:
        """
        Get a spoken answer to ``question``.

        Raises:
            httpx.HTTPError: If the Q&A service cannot be reached or rejects the call
            UnexpectedResponseType: If it does not answer with audio
            StorageUploadFailed: If the answer cannot be published
        """
        started = int(self._clock() * 1000)
        audio = await self.remote_jobs.post_json(
            self.config.services.qa_url,
            {"question": question},
            "audio/mpeg",
            self.config.timeouts.qa_seconds,
        )
        key = f"audios/audio_{started}_{random.randint(0, 999)}.mp3"
        url = await self.blob_store.upload(self.config.storage.buckets.answers, key, audio, "audio/mpeg")
        logger.info(f"Answered question in {int(self._clock() * 1000) - started}ms: {url}")
        return AskResponse(audio_url=url, timestamp=started)
