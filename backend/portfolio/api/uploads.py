from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, Path, Query, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio.core.config import settings
from portfolio.core.database import get_db
from portfolio.core.rate_limit import limiter
from portfolio.models.collection import Collection
from portfolio.services.folders import RESERVED_FOLDERS
from portfolio.services.ingestion import BatchOrchestrator, IngestionPipeline, SourceFile
from portfolio.services.upload_jobs import UploadJobManager
from portfolio.services.uploader import get_asset_uploader

router = APIRouter(tags=["uploads"])


def get_upload_jobs(request: Request) -> UploadJobManager:
    return request.app.state.upload_jobs


def get_orchestrator() -> BatchOrchestrator:
    try:
        uploader = get_asset_uploader()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=f"Upload storage is not configured: {exc}") from exc
    return BatchOrchestrator(IngestionPipeline(uploader))


async def _read_source_files(files: list[UploadFile]) -> list[SourceFile]:
    if not files:
        raise HTTPException(status_code=400, detail="No files provided.")
    if len(files) > settings.UPLOAD_MAX_FILES:
        raise HTTPException(status_code=400, detail=f"Maximum {settings.UPLOAD_MAX_FILES} files allowed")

    source_files = []
    for file in files:
        source_files.append(
            SourceFile(
                name=file.filename or "upload",
                data=await file.read(),
                content_type=file.content_type,
            )
        )
    return source_files


@router.post("/collections/{collection_id}/uploads")
@limiter.limit("20/minute")
async def upload_to_collection(
    request: Request,
    collection_id: str = Path(...),
    files: list[UploadFile] = File(...),
    db: AsyncSession = Depends(get_db),
    jobs: UploadJobManager = Depends(get_upload_jobs),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
):
    try:
        collection_uuid = UUID(collection_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid collection id") from exc

    if await db.get(Collection, collection_uuid) is None:
        raise HTTPException(status_code=404, detail="Collection not found")

    source_files = await _read_source_files(files)
    job = jobs.start(source_files, orchestrator, collection_id=collection_uuid)
    return job.to_dict()


@router.post("/uploads")
@limiter.limit("20/minute")
async def upload_unfiled(
    request: Request,
    files: list[UploadFile] = File(...),
    folder: str = Query(default="misc"),
    jobs: UploadJobManager = Depends(get_upload_jobs),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
):
    if folder not in RESERVED_FOLDERS:
        raise HTTPException(status_code=400, detail=f"folder must be one of {sorted(RESERVED_FOLDERS)}")

    source_files = await _read_source_files(files)
    job = jobs.start(source_files, orchestrator, folder_kind=folder)
    return job.to_dict()


@router.get("/uploads/{job_id}")
async def get_upload_job(
    job_id: str = Path(...),
    jobs: UploadJobManager = Depends(get_upload_jobs),
):
    job = jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Upload job not found")
    return job.to_dict()


@router.delete("/uploads/{job_id}")
async def cancel_upload_job(
    job_id: str = Path(...),
    jobs: UploadJobManager = Depends(get_upload_jobs),
):
    job = jobs.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Upload job not found")
    return job.to_dict()
