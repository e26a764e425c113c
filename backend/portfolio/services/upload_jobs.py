from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portfolio.services.associations import AssociationError, attach_uploads
from portfolio.services.collections import CollectionFolderResolver
from portfolio.services.folders import MISC_FOLDER, StaticFolderResolver
from portfolio.services.ingestion import (
    BatchOrchestrator,
    BatchResult,
    IngestionProgress,
    ProgressSink,
    SourceFile,
)

MAX_RETAINED_JOBS = 100
logger = logging.getLogger(__name__)


@dataclass
class IngestionOutcome:
    result: BatchResult
    photo_ids: list[UUID] = field(default_factory=list)
    unassociated_asset_ids: list[str] = field(default_factory=list)
    association_error: str | None = None

    def to_dict(self) -> dict:
        payload = self.result.to_dict()
        payload["photo_ids"] = [str(photo_id) for photo_id in self.photo_ids]
        payload["unassociated_asset_ids"] = self.unassociated_asset_ids
        payload["association_error"] = self.association_error
        return payload


async def ingest_files(
    db: AsyncSession,
    files: Sequence[SourceFile],
    orchestrator: BatchOrchestrator,
    collection_id: UUID | None = None,
    folder_kind: str = MISC_FOLDER,
    cancel_event: asyncio.Event | None = None,
    progress_sink: ProgressSink | None = None,
) -> IngestionOutcome:
    """Upload ``files`` and, for a collection target, link the successes.

    Linking happens once, after every record is terminal, and covers only
    records whose upload completed, so a cancelled batch never leaves links
    for files that did not finish uploading.
    """
    if collection_id is None:
        resolver = StaticFolderResolver(folder_kind)
    else:
        resolver = CollectionFolderResolver(db, collection_id)

    result = await orchestrator.run(files, resolver, cancel_event=cancel_event, progress_sink=progress_sink)
    outcome = IngestionOutcome(result=result)
    if collection_id is None or not result.succeeded:
        return outcome

    try:
        outcome.photo_ids = await attach_uploads(db, collection_id, result.succeeded)
    except AssociationError as exc:
        outcome.unassociated_asset_ids = exc.asset_ids
        outcome.association_error = str(exc)
        logger.error(
            "ingest event=association_failed collection=%s assets=%s error=%s",
            collection_id,
            exc.asset_ids,
            exc,
        )
    return outcome


@dataclass
class UploadJob:
    id: str
    collection_id: UUID | None
    progress: IngestionProgress
    status: str = "running"
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: IngestionOutcome | None = None
    error: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.status != "running"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "collection_id": str(self.collection_id) if self.collection_id else None,
            "status": self.status,
            "cancel_requested": self.cancel_event.is_set(),
            "progress": self.progress.to_dict(),
            "error": self.error,
            "result": self.outcome.to_dict() if self.outcome else None,
        }


class UploadJobManager:
    """Background upload jobs for one app instance."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory
        self._jobs: dict[str, UploadJob] = {}

    def get(self, job_id: str) -> UploadJob | None:
        return self._jobs.get(job_id)

    def start(
        self,
        files: Sequence[SourceFile],
        orchestrator: BatchOrchestrator,
        collection_id: UUID | None = None,
        folder_kind: str = MISC_FOLDER,
    ) -> UploadJob:
        self._prune()
        job = UploadJob(id=uuid4().hex, collection_id=collection_id, progress=IngestionProgress(total=len(files)))
        self._jobs[job.id] = job
        job.task = asyncio.create_task(self._run(job, list(files), orchestrator, folder_kind))
        logger.info("upload_job event=started job_id=%s files=%s collection=%s", job.id, len(files), collection_id)
        return job

    def cancel(self, job_id: str) -> UploadJob | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.finished:
            job.cancel_event.set()
            logger.info("upload_job event=cancel_requested job_id=%s", job_id)
        return job

    def _progress_sink(self, job: UploadJob) -> Callable[[IngestionProgress], None]:
        def _update(progress: IngestionProgress) -> None:
            job.progress = progress

        return _update

    async def _run(
        self,
        job: UploadJob,
        files: list[SourceFile],
        orchestrator: BatchOrchestrator,
        folder_kind: str,
    ) -> None:
        try:
            async with self._session_factory() as db:
                job.outcome = await ingest_files(
                    db,
                    files,
                    orchestrator,
                    collection_id=job.collection_id,
                    folder_kind=folder_kind,
                    cancel_event=job.cancel_event,
                    progress_sink=self._progress_sink(job),
                )
        except Exception as exc:
            job.status = "failed"
            job.error = str(exc)
            logger.exception("upload_job event=failed job_id=%s", job.id)
            return

        job.status = "cancelled" if job.outcome.result.cancelled else "completed"
        logger.info(
            "upload_job event=%s job_id=%s summary=%r", job.status, job.id, job.outcome.result.summary
        )

    def _prune(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.finished]
        while len(self._jobs) >= MAX_RETAINED_JOBS and finished:
            self._jobs.pop(finished.pop(0), None)

    async def shutdown(self) -> None:
        running = [job for job in self._jobs.values() if not job.finished]
        for job in running:
            job.cancel_event.set()
        tasks = [job.task for job in running if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
