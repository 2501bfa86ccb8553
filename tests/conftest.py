"""
Pytest configuration and fixtures for Slidecast Backend tests.
"""

import asyncio
import io
import os
import re
import tempfile
import threading
import time
import zipfile
from collections import defaultdict
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

# Set test environment variables before importing the app
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="slidecast_test_uploads_")
os.environ["STORAGE_PUBLIC_BASE_URL"] = "https://blobs.test"
os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.pop("SLIDECAST_CONFIG", None)

from slidecast_backend.blob_store import BlobStoreClient  # noqa: E402
from slidecast_backend.configuration import make_runtime_config  # noqa: E402
from slidecast_backend.conversion import ConversionAdapter  # noqa: E402
from slidecast_backend.pipeline import PipelineOrchestrator, UploadJob  # noqa: E402
from slidecast_backend.remote_jobs import RemoteJobClient  # noqa: E402
from slidecast_backend.task_registry import TaskRegistry  # noqa: E402

PUBLIC_PREFIX = "https://blobs.test/storage/v1/object/public/"


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures_left = 0
        self.always_fail_keys: set[str] = set()
        self.delay_for: Callable[[str], float] = lambda key: 0.0
        self.completion_order: list[str] = []
        self._lock = threading.Lock()

    def put_object(self, Bucket: str, Key: str, Body: bytes, ContentType: str) -> dict:
        with self._lock:
            self.calls.append((Bucket, Key))
            if self.failures_left > 0:
                self.failures_left -= 1
                raise ConnectionError("storage temporarily unavailable")
        if Key in self.always_fail_keys:
            raise ConnectionError(f"cannot store {Key}")
        time.sleep(self.delay_for(Key))
        with self._lock:
            self.objects[(Bucket, Key)] = (bytes(Body), ContentType)
            self.completion_order.append(Key)
        return {"ETag": '"fake"'}

    def body(self, bucket: str, key: str) -> bytes:
        return self.objects[(bucket, key)][0]

    def object_for_url(self, url: str) -> Optional[tuple[bytes, str]]:
        if not url.startswith(PUBLIC_PREFIX):
            return None
        bucket, _, key = url[len(PUBLIC_PREFIX):].partition("/")
        return self.objects.get((bucket, key))


def make_audio_zip(slide_numbers, extra_entries=None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for number in slide_numbers:
            archive.writestr(f"slide{number}.wav", f"RIFF-slide{number}".encode())
        archive.writestr("readme.txt", b"not audio")
        for name, data in (extra_entries or {}).items():
            archive.writestr(name, data)
    return buffer.getvalue()


class FakeMediaServices:
    """
    Routes the remote media endpoints and public blob URLs to in-memory fakes.

    Compose answers echo the audio part filename, so tests can check which
    clip ended up in which slide video.
    """

    def __init__(self, settings, s3: FakeS3Client, slides: int = 2) -> None:
        self.settings = settings
        self.s3 = s3
        self.slide_numbers = list(reversed(range(1, slides + 1)))
        self.extra_zip_entries: dict[str, bytes] = {}
        self.audio_status = 200
        self.audio_content_type = "application/zip"
        self.animation_status = 200
        self.compose_fail_slides: set[int] = set()
        self.compose_delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.calls: dict[str, int] = defaultdict(int)
        self.composed_clips: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        services = self.settings.services
        if request.method == "GET":
            stored = self.s3.object_for_url(url)
            if stored is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, content=stored[0], headers={"content-type": stored[1]})

        if url == services.audio_url:
            self.calls["audio"] += 1
            if self.gate is not None:
                await self.gate.wait()
            if self.audio_status != 200:
                return httpx.Response(self.audio_status, json={"error": "tts down"})
            return httpx.Response(
                200,
                content=make_audio_zip(self.slide_numbers, self.extra_zip_entries),
                headers={"content-type": self.audio_content_type},
            )

        if url == services.animation_url:
            self.calls["animation"] += 1
            if self.gate is not None:
                await self.gate.wait()
            if self.animation_status != 200:
                return httpx.Response(self.animation_status, json={"error": "animation down"})
            return httpx.Response(200, content=b"animation-mp4", headers={"content-type": "video/mp4"})

        if url == services.compose_url:
            self.calls["compose"] += 1
            match = re.search(rb'filename="([^"]*slide(\d+)\.wav)"', request.content)
            assert match is not None
            clip, slide = match.group(1).decode(), int(match.group(2))
            self.composed_clips.append(clip)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await asyncio.sleep(self.compose_delay)
            finally:
                self.in_flight -= 1
            if slide in self.compose_fail_slides:
                return httpx.Response(500, json={"error": f"compose failed for {clip}"})
            return httpx.Response(200, content=f"video-{clip}".encode(), headers={"content-type": "video/mp4"})

        return httpx.Response(404, json={"error": f"unrouted {url}"})


class FakeConverter(ConversionAdapter):
    """Writes placeholder PDF and page files instead of running soffice/pdftoppm."""

    def __init__(self, pages: int = 3, **kwargs) -> None:
        super().__init__(**kwargs)
        self.pages = pages

    async def to_pdf(self, source: Path, scratch_dir: Optional[Path] = None) -> Path:
        self.check_source(source)
        pdf_path = (scratch_dir or source.parent) / f"{source.stem}.pdf"
        pdf_path.write_bytes(b"%PDF-1.4 fake")
        return pdf_path

    async def rasterize(self, pdf_path: Path) -> list[Path]:
        for number in reversed(range(1, self.pages + 1)):
            (pdf_path.parent / f"page-{number}.png").write_bytes(f"png-{number}".encode())
        return self.collect_pages(pdf_path.parent)


@pytest.fixture
def settings(tmp_path):
    """Runtime config with instant retries and a private upload root."""
    return make_runtime_config(
        {
            "retry": {
                "remote_delay_seconds": 0,
                "upload_delay_seconds": 0,
                "delete_delay_seconds": 0,
            },
            "paths": {"upload_root": str(tmp_path / "uploads")},
            "storage": {"public_base_url": "https://blobs.test"},
        }
    )


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def blob_store(fake_s3):
    return BlobStoreClient(fake_s3, public_base_url="https://blobs.test", attempts=3, delay=0)


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def services(settings, fake_s3):
    return FakeMediaServices(settings, fake_s3)


@pytest.fixture
def converter():
    return FakeConverter(pages=3)


@pytest.fixture
def orchestrator(settings, registry, blob_store, services, converter):
    remote_jobs = RemoteJobClient(attempts=3, delay=0, transport=services.transport)
    return PipelineOrchestrator(
        settings,
        registry=registry,
        blob_store=blob_store,
        remote_jobs=remote_jobs,
        converter=converter,
    )


@pytest.fixture
def make_upload(orchestrator):
    """Create an UploadJob the way the HTTP layer does."""

    def _make(filename: str = "Quarterly Deck.pptx", portrait: Optional[str] = None) -> UploadJob:
        scratch_dir = orchestrator.new_scratch_dir()
        document_path = scratch_dir / filename.replace(" ", "_")
        document_path.write_bytes(b"PK fake presentation")
        portrait_path = None
        if portrait is not None:
            portrait_path = scratch_dir / f"portrait{Path(portrait).suffix}"
            portrait_path.write_bytes(b"\x89PNG fake portrait")
        return UploadJob(
            document_path=document_path,
            original_filename=filename,
            scratch_dir=scratch_dir,
            portrait_path=portrait_path,
            portrait_filename=portrait,
        )

    return _make
