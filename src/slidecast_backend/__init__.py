"""
Slidecast Backend - REST API that turns slide decks into narrated videos

This package provides a FastAPI-based web service that orchestrates several
external services around one uploaded presentation:

- Slide deck uploads and validation
- Conversion to PDF and per-page images (LibreOffice + poppler)
- Publishing of every artifact to an S3-compatible blob store
- Background narration (speech synthesis) and avatar animation jobs
- Per-slide composition of the narration with the animation
- Poll-able status for every background task

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - pipeline: Upload orchestration and background run coordinator
    - task_registry: In-memory media and composite task records
    - status_service: Client-facing projection of task records
    - remote_jobs: HTTP client and retry policy for the media services
    - blob_store: Artifact uploads and public URL derivation
    - conversion: Slide deck to page image conversion
    - qa_service: Spoken answers to free-form questions
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn slidecast_backend.main:app --reload --host 0.0.0.0 --port 5100

Architecture Principles:
    - The upload response never waits for media generation
    - One asyncio event loop; the task registry needs no locks
    - Background failures are recorded on tasks, never raised
    - Task state is in-memory and lives as long as the process
"""
