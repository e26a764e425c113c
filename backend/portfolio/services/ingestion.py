from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Callable, Sequence

from portfolio.core.config import settings
from portfolio.services.compression import (
    OUTPUT_CONTENT_TYPE,
    CompressionPolicy,
    reduce_image_async,
)
from portfolio.services.exif import ExtractedMetadata, extract_metadata
from portfolio.services.file_types import detect_image_content_type, magic_bytes_mismatch
from portfolio.services.folders import FolderResolver
from portfolio.services.uploader import AssetUploader, AssetUploadError, ProcessedAsset

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled before upload started"


class UploadStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = {UploadStatus.DONE, UploadStatus.FAILED}

_TRANSITIONS = {
    UploadStatus.PENDING: {UploadStatus.EXTRACTING},
    UploadStatus.EXTRACTING: {UploadStatus.COMPRESSING, UploadStatus.UPLOADING},
    UploadStatus.COMPRESSING: {UploadStatus.UPLOADING},
    UploadStatus.UPLOADING: {UploadStatus.DONE},
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class SourceFile:
    name: str
    data: bytes = field(repr=False)
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class SkippedFile:
    name: str
    reason: str


@dataclass
class UploadRecord:
    position: int
    source: SourceFile
    content_type: str
    metadata: ExtractedMetadata = field(default_factory=ExtractedMetadata)
    asset: ProcessedAsset | None = None
    status: UploadStatus = UploadStatus.PENDING
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: UploadStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(f"{self.source.name}: {self.status.value} -> {status.value}")
        self.status = status

    def fail(self, message: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"{self.source.name}: {self.status.value} -> failed")
        self.status = UploadStatus.FAILED
        self.error = message

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "name": self.source.name,
            "status": self.status.value,
            "error": self.error,
            "asset": (
                {
                    "id": self.asset.id,
                    "url": self.asset.url,
                    "width": self.asset.width,
                    "height": self.asset.height,
                    "bytes": self.asset.bytes,
                }
                if self.asset
                else None
            ),
        }


@dataclass(frozen=True)
class IngestionProgress:
    total: int
    completed: int = 0
    succeeded: int = 0
    failed: int = 0
    current_files: tuple[str, ...] = ()

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return min(100, int((self.completed / self.total) * 100))

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "current_files": list(self.current_files),
            "progress_percent": self.percent,
        }


ProgressSink = Callable[[IngestionProgress], None]


class ProgressTracker:
    """Owns the progress counters; every update goes through one lock."""

    def __init__(self, total: int, sink: ProgressSink | None = None) -> None:
        self._lock = asyncio.Lock()
        self._sink = sink
        self._progress = IngestionProgress(total=total)

    @property
    def snapshot(self) -> IngestionProgress:
        return self._progress

    async def publish(self) -> None:
        async with self._lock:
            self._publish(self._progress)

    def _publish(self, progress: IngestionProgress) -> None:
        self._progress = progress
        if self._sink is not None:
            self._sink(progress)

    async def started(self, name: str) -> None:
        async with self._lock:
            current = self._progress
            self._publish(
                IngestionProgress(
                    total=current.total,
                    completed=current.completed,
                    succeeded=current.succeeded,
                    failed=current.failed,
                    current_files=(*current.current_files, name),
                )
            )

    async def finished(self, name: str, succeeded: bool) -> None:
        async with self._lock:
            current = self._progress
            remaining = list(current.current_files)
            if name in remaining:
                remaining.remove(name)
            self._publish(
                IngestionProgress(
                    total=current.total,
                    completed=current.completed + 1,
                    succeeded=current.succeeded + (1 if succeeded else 0),
                    failed=current.failed + (0 if succeeded else 1),
                    current_files=tuple(remaining),
                )
            )


@dataclass
class BatchResult:
    records: list[UploadRecord]
    skipped: list[SkippedFile] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> list[UploadRecord]:
        return [record for record in self.records if record.status == UploadStatus.DONE]

    @property
    def failed(self) -> list[UploadRecord]:
        return [record for record in self.records if record.status == UploadStatus.FAILED]

    @property
    def failed_names(self) -> list[str]:
        return [record.source.name for record in self.failed]

    @property
    def summary(self) -> str:
        return f"{len(self.succeeded)} of {len(self.records)} succeeded"

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "skipped": [{"name": item.name, "reason": item.reason} for item in self.skipped],
            "failed_files": self.failed_names,
            "cancelled": self.cancelled,
            "records": [record.to_dict() for record in self.records],
        }


def screen_files(
    files: Sequence[SourceFile],
    max_file_bytes: int,
) -> tuple[list[UploadRecord], list[SkippedFile]]:
    """Split input into pipeline records and skipped files, keeping order."""
    records: list[UploadRecord] = []
    skipped: list[SkippedFile] = []
    for source in files:
        content_type = detect_image_content_type(source.name, source.content_type, source.data)
        if content_type is None:
            skipped.append(SkippedFile(source.name, "not an image"))
            continue
        if source.size == 0:
            skipped.append(SkippedFile(source.name, "empty file"))
            continue
        if source.size > max_file_bytes:
            skipped.append(SkippedFile(source.name, f"larger than {max_file_bytes} bytes"))
            continue
        if magic_bytes_mismatch(content_type, source.data):
            skipped.append(SkippedFile(source.name, f"content does not match {content_type}"))
            continue
        records.append(UploadRecord(position=len(records), source=source, content_type=content_type))
    return records, skipped


def _reencoded_name(name: str) -> str:
    return str(PurePath(name).with_suffix(".jpg"))


class IngestionPipeline:
    """Runs one file through extract, reduce and upload."""

    def __init__(
        self,
        uploader: AssetUploader,
        policy: CompressionPolicy | None = None,
        retry_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.uploader = uploader
        self.policy = policy or CompressionPolicy.from_settings()
        self.retry_attempts = settings.UPLOAD_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        self.retry_backoff_seconds = (
            settings.UPLOAD_RETRY_BACKOFF_SECONDS if retry_backoff_seconds is None else retry_backoff_seconds
        )
        self.executor = executor

    async def _upload(self, data: bytes, folder: str, filename: str, content_type: str) -> ProcessedAsset:
        attempt = 0
        while True:
            try:
                return await self.uploader.upload(data, folder, filename, content_type)
            except AssetUploadError as exc:
                if not exc.retryable or attempt >= self.retry_attempts:
                    raise
                delay = self.retry_backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.info("ingest event=upload_retry file=%s attempt=%s delay=%s", filename, attempt, delay)
                await asyncio.sleep(delay)

    async def process(self, record: UploadRecord, folder: str) -> None:
        source = record.source

        record.advance(UploadStatus.EXTRACTING)
        record.metadata = extract_metadata(source.data)

        data = source.data
        filename = source.name
        content_type = record.content_type
        if self.policy.needs_reduction(source.size):
            record.advance(UploadStatus.COMPRESSING)
            reduced = await reduce_image_async(data, self.policy, self.executor)
            if reduced is not data:
                data = reduced
                filename = _reencoded_name(source.name)
                content_type = OUTPUT_CONTENT_TYPE

        record.advance(UploadStatus.UPLOADING)
        record.asset = await self._upload(data, folder, filename, content_type)
        record.advance(UploadStatus.DONE)


class BatchOrchestrator:
    """Feeds files through the pipeline ``batch_size`` at a time.

    Each batch runs concurrently and must finish before the next starts. A
    failing file is recorded and never stops the others. Setting
    ``cancel_event`` stops further batches; files that never started are
    marked failed.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        batch_size: int | None = None,
        max_file_bytes: int | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.batch_size = max(1, batch_size or settings.UPLOAD_BATCH_SIZE)
        self.max_file_bytes = max_file_bytes or settings.MAX_UPLOAD_BYTES

    async def _run_one(self, record: UploadRecord, folder: str, tracker: ProgressTracker) -> None:
        await tracker.started(record.source.name)
        try:
            await self.pipeline.process(record, folder)
        except Exception as exc:
            record.fail(str(exc) or exc.__class__.__name__)
            logger.warning(
                "ingest event=file_failed position=%s file=%s error=%s",
                record.position,
                record.source.name,
                record.error,
            )
        else:
            logger.info(
                "ingest event=file_done position=%s file=%s asset=%s",
                record.position,
                record.source.name,
                record.asset.id,
            )
        await tracker.finished(record.source.name, record.status == UploadStatus.DONE)

    async def run(
        self,
        files: Sequence[SourceFile],
        folder_resolver: FolderResolver,
        cancel_event: asyncio.Event | None = None,
        progress_sink: ProgressSink | None = None,
    ) -> BatchResult:
        records, skipped = screen_files(files, self.max_file_bytes)
        for item in skipped:
            logger.info("ingest event=file_skipped file=%s reason=%s", item.name, item.reason)

        result = BatchResult(records=records, skipped=skipped)
        # Totals count screened records only; an empty run publishes 0 of 0.
        tracker = ProgressTracker(len(records), progress_sink)
        await tracker.publish()
        if not records:
            return result

        folder = await folder_resolver.resolve()
        logger.info(
            "ingest event=batch_start files=%s skipped=%s batch_size=%s folder=%s",
            len(records),
            len(skipped),
            self.batch_size,
            folder,
        )

        for start in range(0, len(records), self.batch_size):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                for record in records[start:]:
                    record.fail(CANCELLED_MESSAGE)
                    await tracker.finished(record.source.name, False)
                logger.info("ingest event=batch_cancelled remaining=%s", len(records) - start)
                break

            batch = records[start:start + self.batch_size]
            await asyncio.gather(*(self._run_one(record, folder, tracker) for record in batch))

        logger.info(
            "ingest event=batch_done summary=%r skipped=%s cancelled=%s",
            result.summary,
            len(skipped),
            result.cancelled,
        )
        return result
