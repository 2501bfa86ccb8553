from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from .blob_store import BlobStoreClient
from .configuration import get_settings_container, make_runtime_config
from .conversion import ConversionAdapter
from .errors import (
    ConversionFailed,
    InvalidFileType,
    RasterizationFailed,
    StorageUploadFailed,
    TaskNotFound,
    UnexpectedResponseType,
)
from .models import AskRequest, AskResponse, CompositeStatusResponse, MediaTaskStatusResponse, UploadResult
from .pipeline import PipelineOrchestrator, UploadJob
from .qa_service import QuestionAnswerService
from .remote_jobs import RemoteJobClient
from .status_service import StatusQueryService
from .task_registry import TaskRegistry
from .utils import retry_delete, sanitize_name, split_extension

config = make_runtime_config()
logging.basicConfig(
    level=str(config.logging.level).upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)
logger.debug(f"Effective configuration: {get_settings_container(config)}")

registry = TaskRegistry()
blob_store = BlobStoreClient.from_config(config)
remote_jobs = RemoteJobClient(attempts=config.retry.remote_attempts, delay=config.retry.remote_delay_seconds)
orchestrator = PipelineOrchestrator(
    config,
    registry=registry,
    blob_store=blob_store,
    remote_jobs=remote_jobs,
    converter=ConversionAdapter.from_config(config),
)
status_service = StatusQueryService(registry)
qa_service = QuestionAnswerService(config, blob_store=blob_store, remote_jobs=remote_jobs)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    if orchestrator.active_runs:
        logger.warning(f"Shutting down with {orchestrator.active_runs} background pipeline run(s) unfinished")


app = FastAPI(title="Slidecast API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator() -> PipelineOrchestrator:
    return orchestrator


def get_status_service() -> StatusQueryService:
    return status_service


def get_qa_service() -> QuestionAnswerService:
    return qa_service


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


async def _store_upload(file: UploadFile, destination: Path) -> Path:
    with destination.open("wb") as buffer:
        while chunk := await file.read(8 * 1024 * 1024):
            buffer.write(chunk)
    await file.close()
    return destination


@app.post("/upload", response_model=UploadResult)
async def upload_deck(
    ppt: UploadFile = File(...),
    user_image: Optional[UploadFile] = File(None, alias="userImage"),
    manager: PipelineOrchestrator = Depends(get_orchestrator),
) -> UploadResult:
    if not ppt.filename:
        raise HTTPException(status_code=400, detail="No PPT file uploaded.")

    scratch_dir = manager.new_scratch_dir()
    try:
        stem, ext = split_extension(ppt.filename)
        document_path = await _store_upload(ppt, scratch_dir / f"{sanitize_name(stem)}{ext}")
        portrait_path = None
        portrait_filename = None
        if user_image is not None and user_image.filename:
            portrait_filename = user_image.filename
            _, portrait_ext = split_extension(portrait_filename)
            portrait_path = await _store_upload(user_image, scratch_dir / f"portrait{portrait_ext}")
    except Exception:
        await retry_delete(scratch_dir)
        raise

    job = UploadJob(
        document_path=document_path,
        original_filename=ppt.filename,
        scratch_dir=scratch_dir,
        portrait_path=portrait_path,
        portrait_filename=portrait_filename,
    )
    try:
        return await manager.process_upload(job)
    except InvalidFileType as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (ConversionFailed, RasterizationFailed, StorageUploadFailed) as exc:
        raise HTTPException(status_code=500, detail=f"Error processing PPT: {exc}") from exc


@app.get("/status/final-videos/{folder_name}", response_model=CompositeStatusResponse)
def final_video_status(
    folder_name: str, service: StatusQueryService = Depends(get_status_service)
) -> CompositeStatusResponse:
    try:
        return service.get_composite_status(folder_name)
    except TaskNotFound as exc:
        raise HTTPException(status_code=404, detail="Task not found") from exc


@app.get("/status/{task_id}", response_model=MediaTaskStatusResponse)
def media_task_status(task_id: str, service: StatusQueryService = Depends(get_status_service)) -> MediaTaskStatusResponse:
    try:
        return service.get_media_task_status(task_id)
    except TaskNotFound as exc:
        raise HTTPException(status_code=404, detail="Task not found") from exc


@app.post("/ask", response_model=AskResponse)
async def ask_question(request: AskRequest, service: QuestionAnswerService = Depends(get_qa_service)) -> AskResponse:
    try:
        return await service.ask(request.question)
    except (httpx.HTTPError, UnexpectedResponseType) as exc:
        logger.error(f"Q&A service failed for question {request.question!r}: {exc}")
        raise HTTPException(status_code=502, detail=f"Q&A service failed: {exc}") from exc
    except StorageUploadFailed as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
