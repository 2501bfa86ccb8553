"""
Upload pipeline orchestration.

This module drives one slide deck upload from the raw file to narrated
per-slide videos:

1. Validate the document type
2. Publish the document, portrait and PDF, rasterize the slides and publish
   the page images
3. Reserve the media tasks and the composite task, then answer the request
4. In a detached asyncio task: generate narration audio and (when a portrait
   was supplied) the avatar animation concurrently
5. Once both settle, compose one video per slide with bounded concurrency and
   publish the results

Steps 1-3 run inside the request and raise on failure. Steps 4-5 never raise:
their outcome is written to the TaskRegistry, which clients poll.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Set, TypeVar
from uuid import uuid4

from omegaconf import DictConfig

from .blob_store import BlobStoreClient
from .conversion import ConversionAdapter
from .errors import CompositionFailed, InvalidFileType
from .models import CompositeStatus, MediaKind, UploadResult
from .remote_jobs import FilePart, RemoteJobClient
from .task_registry import TaskRegistry
from .utils import ensure_directory, retry_delete, sanitize_name, sort_by_number_token, split_extension

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLIDE_AUDIO_PATTERN = re.compile(r"slide(\d+)\.wav$", re.IGNORECASE)

DOCUMENT_CONTENT_TYPES = {
    ".ppt": "application/vnd.ms-powerpoint",
    ".pps": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".ppsx": "application/vnd.openxmlformats-officedocument.presentationml.slideshow",
}


@dataclass
class UploadJob:
    """
    Files received with one upload request.

    Everything lives under ``scratch_dir``, which the orchestrator deletes once
    the request has been answered, whether it succeeded or not.
    """

    document_path: Path
    original_filename: str
    scratch_dir: Path
    portrait_path: Optional[Path] = None
    portrait_filename: Optional[str] = None


@dataclass(frozen=True)
class _MediaInputs:
    folder_name: str
    name: str
    document: FilePart
    portrait: Optional[FilePart]
    audio_task_id: str
    animation_task_id: Optional[str]


async def gather_ordered(coros: Iterable[Awaitable[T]]) -> list[T]:
    """
    Await all ``coros`` concurrently and return their results in input order.

    If one fails, the others are cancelled before the error propagates.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _content_type(filename: str, fallback: str = "application/octet-stream") -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or fallback


def _extract_zip(zip_path: Path, destination: Path) -> None:
    with zipfile.ZipFile(zip_path) as archive:
        archive.extractall(destination)


def find_slide_clips(directory: Path) -> list[Path]:
    """
    Per-slide ``.wav`` clips at the top level of ``directory``, ordered by slide number.

    Subdirectories (such as ``__MACOSX``) and ``._`` resource-fork files are ignored.
    """
    clips = [
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() == ".wav" and not path.name.startswith("._")
    ]
    return sort_by_number_token(clips, SLIDE_AUDIO_PATTERN)


class PipelineOrchestrator:
    """
    Coordinates conversion, storage, remote media jobs and task tracking.

    Attributes:
        registry: Where task progress is recorded
        upload_root: Parent directory of per-request scratch directories
    """

    def __init__(
        self,
        config: DictConfig,
        registry: TaskRegistry,
        blob_store: BlobStoreClient,
        remote_jobs: RemoteJobClient,
        converter: ConversionAdapter,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.registry = registry
        self.blob_store = blob_store
        self.remote_jobs = remote_jobs
        self.converter = converter
        self.upload_root = ensure_directory(Path(config.paths.upload_root))
        self._clock = clock
        self._buckets = config.storage.buckets
        self._allowed_extensions = [ext.lower() for ext in config.pipeline.allowed_extensions]
        self._issued_folders: Set[str] = set()
        self._runs: Set[asyncio.Task[Any]] = set()

    def _millis(self) -> int:
        return int(self._clock() * 1000)

    def new_scratch_dir(self, label: str = "temp") -> Path:
        return ensure_directory(self.upload_root / f"{label}-{self._millis()}-{uuid4().hex[:8]}")

    def make_folder_name(self, name: str) -> str:
        """Build the folder identifier that joins every artifact of one upload."""
        prefix = self.config.pipeline.folder_prefix
        timestamp = self._millis()
        folder_name = f"{prefix}-{timestamp}-{name}"
        while folder_name in self._issued_folders:
            timestamp += 1
            folder_name = f"{prefix}-{timestamp}-{name}"
        self._issued_folders.add(folder_name)
        return folder_name

    async def _cleanup(self, path: Path) -> None:
        await retry_delete(
            path,
            attempts=self.config.retry.delete_attempts,
            delay=self.config.retry.delete_delay_seconds,
        )

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    async def wait_idle(self) -> None:
        """Wait until every detached background run has finished."""
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    async def process_upload(self, job: UploadJob) -> UploadResult:
        """
        Run the synchronous part of the pipeline and launch the rest.

        Returns as soon as the page images are published; media generation and
        composition continue in the background.

        Raises:
            InvalidFileType: If the document extension is not allowed
            ConversionFailed, RasterizationFailed: If the deck cannot be rendered
            StorageUploadFailed: If publishing an artifact fails
        """
        try:
            return await self._process_upload(job)
        except Exception as exc:
            logger.error(f"Upload of {job.original_filename} failed: {exc}")
            raise
        finally:
            await self._cleanup(job.scratch_dir)

    async def _process_upload(self, job: UploadJob) -> UploadResult:
        stem, ext = split_extension(job.original_filename)
        if ext not in self._allowed_extensions:
            raise InvalidFileType(ext, self._allowed_extensions)

        name = sanitize_name(stem)
        folder_name = self.make_folder_name(name)
        logger.info(f"Processing upload {job.original_filename} as {folder_name}")

        document_type = DOCUMENT_CONTENT_TYPES.get(ext, "application/octet-stream")
        document_bytes = await asyncio.to_thread(job.document_path.read_bytes)
        document_url = await self.blob_store.upload(
            self._buckets.documents, f"{folder_name}/ppt-{name}{ext}", document_bytes, document_type
        )

        portrait_part: Optional[FilePart] = None
        user_image_url: Optional[str] = None
        if job.portrait_path is not None:
            portrait_filename = job.portrait_filename or job.portrait_path.name
            _, portrait_ext = split_extension(portrait_filename)
            portrait_type = _content_type(portrait_filename, fallback=f"image/{portrait_ext.lstrip('.') or 'png'}")
            portrait_bytes = await asyncio.to_thread(job.portrait_path.read_bytes)
            user_image_url = await self.blob_store.upload(
                self._buckets.portraits,
                f"{folder_name}/user-image-{name}{portrait_ext}",
                portrait_bytes,
                portrait_type,
            )
            portrait_part = FilePart(f"{name}{portrait_ext}", portrait_bytes, portrait_type)

        pdf_path = await self.converter.to_pdf(job.document_path, job.scratch_dir)
        pdf_url = await self.blob_store.upload_file(
            self._buckets.pdfs, f"{folder_name}/pdf-{name}.pdf", pdf_path, "application/pdf"
        )
        pages = await self.converter.rasterize(pdf_path)
        image_urls = await self._upload_pages(folder_name, pages)
        logger.info(f"Image URLs generated: {len(image_urls)} URLs")

        # Task ids are reserved before answering so that a returned id is always known
        audio_task_id = uuid4().hex
        self.registry.start_media(audio_task_id, MediaKind.AUDIO)
        animation_task_id: Optional[str] = None
        if portrait_part is not None:
            animation_task_id = uuid4().hex
            self.registry.start_media(animation_task_id, MediaKind.ANIMATION)
        self.registry.open_composite(folder_name)

        self._launch(
            _MediaInputs(
                folder_name=folder_name,
                name=name,
                document=FilePart(f"{name}{ext}", document_bytes, document_type),
                portrait=portrait_part,
                audio_task_id=audio_task_id,
                animation_task_id=animation_task_id,
            )
        )

        return UploadResult(
            folder_name=folder_name,
            image_urls=image_urls,
            document_url=document_url,
            pdf_url=pdf_url,
            user_image_url=user_image_url,
            audio_task_id=audio_task_id,
            animation_task_id=animation_task_id,
        )

    async def _upload_pages(self, folder_name: str, pages: list[Path]) -> list[str]:
        semaphore = asyncio.Semaphore(self.config.pipeline.image_upload_concurrency)

        async def upload_page(index: int, path: Path) -> str:
            async with semaphore:
                return await self.blob_store.upload_file(
                    self._buckets.images, f"{folder_name}/image-{index}.png", path, "image/png"
                )

        return await gather_ordered(upload_page(index, path) for index, path in enumerate(pages, start=1))

    def _launch(self, inputs: _MediaInputs) -> None:
        run = asyncio.create_task(self._run_background(inputs), name=f"pipeline-{inputs.folder_name}")
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    async def _run_background(self, inputs: _MediaInputs) -> None:
        folder_name = inputs.folder_name
        try:
            audio_url, animation_url = await asyncio.gather(
                self.generate_audio(inputs.audio_task_id, folder_name, inputs.document),
                self._animation_or_absent(inputs),
            )
            if not (audio_url and animation_url):
                reason = "no portrait provided" if inputs.portrait is None else "missing audio or animation"
                logger.info(f"Skipping final video generation for {folder_name}: {reason}")
                self.registry.advance_composite(folder_name, CompositeStatus.SKIPPED)
                return

            self.registry.advance_composite(folder_name, CompositeStatus.PROCESSING)
            try:
                video_urls = await self.compose_videos(audio_url, animation_url, folder_name)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Final video generation failed for {folder_name}: {exc}")
                self.registry.advance_composite(folder_name, CompositeStatus.FAILED, error=str(exc))
            else:
                self.registry.advance_composite(folder_name, CompositeStatus.COMPLETED, video_urls=tuple(video_urls))
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Background pipeline for {folder_name} crashed")
            if not self.registry.get_composite(folder_name).is_terminal:
                self.registry.advance_composite(folder_name, CompositeStatus.FAILED, error=str(exc))

    async def _animation_or_absent(self, inputs: _MediaInputs) -> Optional[str]:
        if inputs.portrait is None or inputs.animation_task_id is None:
            return None
        return await self.generate_animation(inputs.animation_task_id, inputs.folder_name, inputs.portrait)

    async def generate_audio(self, task_id: str, folder_name: str, document: FilePart) -> Optional[str]:
        """Narrate the deck; returns the audio bundle URL or None on failure."""
        return await self._generate_media(
            task_id,
            endpoint=self.config.services.audio_url,
            files={"file": document},
            expected_content_type="application/zip",
            bucket=self._buckets.audio,
            key=f"{folder_name}/{folder_name}-audio.zip",
        )

    async def generate_animation(self, task_id: str, folder_name: str, portrait: FilePart) -> Optional[str]:
        """Animate the portrait; returns the video URL or None on failure."""
        return await self._generate_media(
            task_id,
            endpoint=self.config.services.animation_url,
            files={"image": portrait},
            expected_content_type="video/mp4",
            bucket=self._buckets.animations,
            key=f"{folder_name}/{folder_name}-animation.mp4",
        )

    async def _generate_media(
        self,
        task_id: str,
        endpoint: str,
        files: dict[str, FilePart],
        expected_content_type: str,
        bucket: str,
        key: str,
    ) -> Optional[str]:
        logger.info(f"Starting media task {task_id} against {endpoint}")
        try:
            payload = await self.remote_jobs.submit_with_retry(
                endpoint, files, expected_content_type, self.config.timeouts.media_seconds
            )
            url = await self.blob_store.upload(bucket, key, payload, expected_content_type)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Media task {task_id} failed: {exc}")
            self.registry.fail_media(task_id, str(exc))
            return None
        self.registry.complete_media(task_id, url)
        logger.info(f"Media task {task_id} completed: {url}")
        return url

    async def compose_videos(self, audio_url: str, animation_url: str, folder_name: str) -> list[str]:
        """
        Compose one video per narrated slide and publish them.

        Args:
            audio_url: URL of the zip bundle holding ``slide<N>.wav`` clips
            animation_url: URL of the avatar animation video
            folder_name: Upload identifier used in the object keys

        Returns:
            Public URLs of the composed videos, slide 1 first

        Raises:
            CompositionFailed: If the bundle holds no clips
            RemoteJobFailed, StorageUploadFailed: If any slide fails
        """
        scratch = self.new_scratch_dir("temp-videos")
        download_timeout = self.config.timeouts.download_seconds
        try:
            zip_path = scratch / "audio.zip"
            await self.remote_jobs.download_with_retry(audio_url, zip_path, download_timeout)
            audio_dir = scratch / "audio"
            try:
                await asyncio.to_thread(_extract_zip, zip_path, audio_dir)
            except zipfile.BadZipFile as exc:
                raise CompositionFailed(f"Audio bundle is not a valid zip archive: {exc}") from exc

            clips = find_slide_clips(audio_dir)
            if not clips:
                raise CompositionFailed("No .wav audio files found in the audio bundle")
            logger.info(f"Found {len(clips)} audio clips for {folder_name}")

            video_path = scratch / "animation.mp4"
            await self.remote_jobs.download_with_retry(animation_url, video_path, download_timeout)

            semaphore = asyncio.Semaphore(self.config.pipeline.compose_concurrency)
            video_urls = await gather_ordered(
                self._compose_slide(semaphore, folder_name, index, video_path, clip)
                for index, clip in enumerate(clips, start=1)
            )
            logger.info(f"Final videos generated for {folder_name}: {len(video_urls)}")
            return video_urls
        finally:
            await self._cleanup(scratch)

    async def _compose_slide(
        self,
        semaphore: asyncio.Semaphore,
        folder_name: str,
        index: int,
        video_path: Path,
        clip: Path,
    ) -> str:
        async with semaphore:
            logger.info(f"Generating final video for slide {index} with audio {clip.name}")
            video = await self.remote_jobs.submit_with_retry(
                self.config.services.compose_url,
                {
                    "video": FilePart("animation.mp4", video_path, "video/mp4"),
                    "audio": FilePart(clip.name, clip, "audio/wav"),
                },
                "video/mp4",
                self.config.timeouts.compose_seconds,
            )
            return await self.blob_store.upload(
                self._buckets.videos, f"{folder_name}/final-video-slide{index}.mp4", video, "video/mp4"
            )
