import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import select

from portfolio.models.collection import CollectionPhoto
from portfolio.models.photo import Photo
from portfolio.services import associations
from portfolio.services.associations import (
    AssociationError,
    ReorderError,
    attach_uploads,
    detach_photo,
    list_collection_photos,
    reorder_collection,
)
from portfolio.services.collections import create_collection
from portfolio.services.exif import ExtractedMetadata
from portfolio.services.ingestion import SourceFile, UploadRecord, UploadStatus
from portfolio.services.upload_jobs import ingest_files
from portfolio.services.uploader import ProcessedAsset
from tests.helpers import make_jpeg


def _record(name, status=UploadStatus.DONE, position=0):
    asset = None
    if status == UploadStatus.DONE:
        asset = ProcessedAsset(
            id=f"portfolio/weddings/{uuid4().hex}",
            url=f"https://cdn.example.test/{name}",
            width=30,
            height=20,
            bytes=123,
        )
    return UploadRecord(
        position=position,
        source=SourceFile(name, b"\xff\xd8\xff"),
        content_type="image/jpeg",
        metadata=ExtractedMetadata(camera_make="Canon", iso="200"),
        asset=asset,
        status=status,
    )


async def _positions(db, collection_id):
    result = await db.execute(
        select(Photo.original_filename, CollectionPhoto.position)
        .join(CollectionPhoto, CollectionPhoto.photo_id == Photo.id)
        .where(CollectionPhoto.collection_id == collection_id)
        .order_by(CollectionPhoto.position)
    )
    return [tuple(row) for row in result.all()]


async def test_attach_appends_after_current_maximum(db):
    collection = await create_collection(db, "Weddings")

    first = await attach_uploads(db, collection.id, [_record("a.jpg"), _record("b.jpg")])
    second = await attach_uploads(db, collection.id, [_record("c.jpg"), _record("d.jpg")])

    assert len(first) == len(second) == 2
    assert await _positions(db, collection.id) == [("a.jpg", 0), ("b.jpg", 1), ("c.jpg", 2), ("d.jpg", 3)]


async def test_attach_copies_metadata_and_skips_unfinished_records(db):
    collection = await create_collection(db, "Weddings")
    records = [_record("a.jpg"), _record("b.jpg", status=UploadStatus.FAILED), _record("c.jpg")]

    photo_ids = await attach_uploads(db, collection.id, records)

    assert len(photo_ids) == 2
    photo = await db.get(Photo, photo_ids[0])
    assert photo.title == "a"
    assert photo.camera_make == "Canon"
    assert photo.iso == "200"
    assert (photo.image_width, photo.image_height) == (30, 20)
    assert await _positions(db, collection.id) == [("a.jpg", 0), ("c.jpg", 1)]


async def test_attach_to_missing_collection_reports_orphaned_assets(db):
    records = [_record("a.jpg"), _record("b.jpg")]

    with pytest.raises(AssociationError) as excinfo:
        await attach_uploads(db, uuid4(), records)

    assert excinfo.value.asset_ids == [record.asset.id for record in records]
    assert (await db.execute(select(Photo))).scalars().all() == []


async def test_attach_retries_after_position_conflict(db, monkeypatch):
    collection = await create_collection(db, "Weddings")
    await attach_uploads(db, collection.id, [_record("a.jpg")])

    real_next_position = associations._next_position
    calls = []

    async def stale_next_position(session, collection_id):
        calls.append(collection_id)
        if len(calls) == 1:
            return 0
        return await real_next_position(session, collection_id)

    monkeypatch.setattr(associations, "_next_position", stale_next_position)

    await attach_uploads(db, collection.id, [_record("b.jpg"), _record("c.jpg")])

    assert len(calls) == 2
    assert await _positions(db, collection.id) == [("a.jpg", 0), ("b.jpg", 1), ("c.jpg", 2)]


async def test_reorder_writes_dense_positions(db):
    collection = await create_collection(db, "Weddings")
    photo_ids = await attach_uploads(db, collection.id, [_record("a.jpg"), _record("b.jpg"), _record("c.jpg")])

    await reorder_collection(db, collection.id, [photo_ids[2], photo_ids[0], photo_ids[1]])

    assert await _positions(db, collection.id) == [("c.jpg", 0), ("a.jpg", 1), ("b.jpg", 2)]


async def test_reorder_rejects_anything_but_a_permutation(db):
    collection = await create_collection(db, "Weddings")
    photo_ids = await attach_uploads(db, collection.id, [_record("a.jpg"), _record("b.jpg")])

    with pytest.raises(ReorderError):
        await reorder_collection(db, collection.id, [photo_ids[0]])
    with pytest.raises(ReorderError):
        await reorder_collection(db, collection.id, [photo_ids[0], photo_ids[0]])
    with pytest.raises(ReorderError):
        await reorder_collection(db, collection.id, [photo_ids[0], uuid4()])

    assert await _positions(db, collection.id) == [("a.jpg", 0), ("b.jpg", 1)]


async def test_reader_never_sees_a_half_applied_reorder(db, session_factory, monkeypatch):
    collection = await create_collection(db, "Weddings")
    photo_ids = await attach_uploads(db, collection.id, [_record("a.jpg"), _record("b.jpg"), _record("c.jpg")])
    original_execute = db.execute
    observed = []

    async def execute_then_read(statement, *args, **kwargs):
        result = await original_execute(statement, *args, **kwargs)
        if getattr(statement, "is_update", False):
            async with session_factory() as reader:
                observed.append([row["title"] for row in await list_collection_photos(reader, collection.id)])
        return result

    monkeypatch.setattr(db, "execute", execute_then_read)
    await reorder_collection(db, collection.id, list(reversed(photo_ids)))
    monkeypatch.undo()

    assert observed == [["a", "b", "c"], ["a", "b", "c"]]
    assert [row["title"] for row in await list_collection_photos(db, collection.id)] == ["c", "b", "a"]


async def test_detach_removes_only_the_association(db):
    collection = await create_collection(db, "Weddings")
    photo_ids = await attach_uploads(db, collection.id, [_record("a.jpg"), _record("b.jpg")])

    await detach_photo(db, collection.id, photo_ids[0])

    assert await _positions(db, collection.id) == [("b.jpg", 1)]
    assert await db.get(Photo, photo_ids[0]) is not None
    with pytest.raises(LookupError):
        await detach_photo(db, collection.id, photo_ids[0])


async def test_ingest_links_successes_when_one_upload_fails(db, orchestrator, uploader):
    collection = await create_collection(db, "Weddings")
    uploader.fail_names = {"b.jpg"}
    files = [SourceFile(name, make_jpeg(), "image/jpeg") for name in ("a.jpg", "b.jpg", "c.jpg")]

    outcome = await ingest_files(db, files, orchestrator, collection_id=collection.id)

    assert outcome.result.summary == "2 of 3 succeeded"
    assert outcome.result.failed_names == ["b.jpg"]
    assert len(outcome.photo_ids) == 2
    assert await _positions(db, collection.id) == [("a.jpg", 0), ("c.jpg", 1)]
    assert {call[1] for call in uploader.calls} == {"portfolio/weddings"}


async def test_cancelled_ingest_links_only_finished_uploads(db, orchestrator, uploader):
    collection = await create_collection(db, "Weddings")
    names = [f"img{index}.jpg" for index in range(6)]
    uploader.delays = {name: 0.02 for name in names[:3]}
    files = [SourceFile(name, make_jpeg(), "image/jpeg") for name in names]
    cancel_event = asyncio.Event()

    def cancel_on_first_progress(progress):
        cancel_event.set()

    outcome = await ingest_files(
        db,
        files,
        orchestrator,
        collection_id=collection.id,
        cancel_event=cancel_event,
        progress_sink=cancel_on_first_progress,
    )

    assert outcome.result.cancelled
    assert [record.status for record in outcome.result.records[3:]] == [UploadStatus.FAILED] * 3
    assert await _positions(db, collection.id) == [("img0.jpg", 0), ("img1.jpg", 1), ("img2.jpg", 2)]


async def test_unfiled_ingest_writes_no_rows(db, orchestrator, uploader):
    files = [SourceFile("hero.jpg", make_jpeg(), "image/jpeg")]

    outcome = await ingest_files(db, files, orchestrator, folder_kind="hero")

    assert outcome.result.summary == "1 of 1 succeeded"
    assert outcome.photo_ids == []
    assert uploader.calls[0][1] == "portfolio/hero"
    assert (await db.execute(select(Photo))).scalars().all() == []
