from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio.core.config import settings
from portfolio.models.collection import Collection, CollectionPhoto
from portfolio.models.photo import Photo
from portfolio.services.ingestion import UploadRecord, UploadStatus

logger = logging.getLogger(__name__)


class AssociationError(RuntimeError):
    """Uploaded assets could not be linked to their collection.

    ``asset_ids`` lists every asset that now exists in the store without an
    association.
    """

    def __init__(self, message: str, asset_ids: Sequence[str]) -> None:
        super().__init__(message)
        self.asset_ids = list(asset_ids)


class ReorderError(ValueError):
    pass


def _photo_from_record(record: UploadRecord) -> Photo:
    asset = record.asset
    metadata = record.metadata
    return Photo(
        title=PurePath(record.source.name).stem or record.source.name,
        image_id=asset.id,
        image_url=asset.url,
        image_width=asset.width,
        image_height=asset.height,
        file_size_bytes=asset.bytes,
        original_filename=record.source.name,
        mime_type=record.content_type,
        camera_make=metadata.camera_make,
        camera_model=metadata.camera_model,
        lens=metadata.lens,
        aperture=metadata.aperture,
        shutter_speed=metadata.shutter_speed,
        iso=metadata.iso,
        focal_length=metadata.focal_length,
        location=metadata.location,
        date_taken=metadata.date_taken,
    )


async def _next_position(db: AsyncSession, collection_id: UUID) -> int:
    result = await db.execute(
        select(func.max(CollectionPhoto.position)).where(CollectionPhoto.collection_id == collection_id)
    )
    current_max = result.scalar_one()
    return 0 if current_max is None else current_max + 1


async def attach_uploads(
    db: AsyncSession,
    collection_id: UUID,
    records: Sequence[UploadRecord],
    max_attempts: int | None = None,
) -> list[UUID]:
    """Persist uploaded records as photos linked to ``collection_id``.

    Links get positions ``max + 1 + i`` in record order, all in one
    transaction. A position clash with a concurrent writer retries the whole
    insert against the new maximum. Returns the new photo ids in order.
    """
    uploads = [record for record in records if record.status == UploadStatus.DONE and record.asset is not None]
    if not uploads:
        return []
    asset_ids = [record.asset.id for record in uploads]
    max_attempts = max(1, max_attempts or settings.ASSOCIATION_RETRY_ATTEMPTS)

    for attempt in range(1, max_attempts + 1):
        try:
            collection = await db.get(Collection, collection_id)
            if collection is None:
                raise AssociationError(f"Collection {collection_id} not found", asset_ids)

            start = await _next_position(db, collection_id)
            photos = [_photo_from_record(record) for record in uploads]
            db.add_all(photos)
            await db.flush()
            db.add_all(
                [
                    CollectionPhoto(collection_id=collection_id, photo_id=photo.id, position=start + offset)
                    for offset, photo in enumerate(photos)
                ]
            )
            await db.commit()
        except AssociationError:
            await db.rollback()
            raise
        except IntegrityError as exc:
            await db.rollback()
            if attempt == max_attempts:
                logger.error(
                    "associate event=failed collection=%s assets=%s error=%s", collection_id, asset_ids, exc
                )
                raise AssociationError("Could not reserve positions in collection", asset_ids) from exc
            logger.info("associate event=position_conflict collection=%s attempt=%s", collection_id, attempt)
            continue
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("associate event=failed collection=%s assets=%s error=%s", collection_id, asset_ids, exc)
            raise AssociationError("Could not save photos to collection", asset_ids) from exc

        logger.info(
            "associate event=done collection=%s photos=%s first_position=%s", collection_id, len(photos), start
        )
        return [photo.id for photo in photos]

    raise AssociationError("Could not save photos to collection", asset_ids)


async def reorder_collection(
    db: AsyncSession,
    collection_id: UUID,
    photo_ids: Sequence[UUID],
    max_attempts: int | None = None,
) -> None:
    """Rewrite a collection's positions to ``0..N-1`` following ``photo_ids``.

    ``photo_ids`` must be a permutation of the photos currently linked. Both
    passes run in one transaction, so readers see either the old or the new
    order. Positions are first parked at negative values to keep the unique
    (collection, position) constraint satisfied row by row.
    """
    if len(set(photo_ids)) != len(photo_ids):
        raise ReorderError("Photo ids must not repeat")
    max_attempts = max(1, max_attempts or settings.ASSOCIATION_RETRY_ATTEMPTS)

    for attempt in range(1, max_attempts + 1):
        try:
            result = await db.execute(
                select(CollectionPhoto.id, CollectionPhoto.photo_id)
                .where(CollectionPhoto.collection_id == collection_id)
                .with_for_update()
            )
            link_ids = {photo_id: link_id for link_id, photo_id in result.all()}
            if set(link_ids) != set(photo_ids):
                raise ReorderError("Photo ids must match the collection's photos exactly")
            if not link_ids:
                await db.commit()
                return

            await db.execute(
                update(CollectionPhoto),
                [{"id": link_ids[photo_id], "position": -(index + 1)} for index, photo_id in enumerate(photo_ids)],
            )
            await db.execute(
                update(CollectionPhoto),
                [{"id": link_ids[photo_id], "position": index} for index, photo_id in enumerate(photo_ids)],
            )
            await db.commit()
        except ReorderError:
            await db.rollback()
            raise
        except (IntegrityError, OperationalError) as exc:
            await db.rollback()
            if attempt == max_attempts:
                raise ReorderError("Reorder failed; collection order left unchanged") from exc
            logger.info("reorder event=retry collection=%s attempt=%s error=%s", collection_id, attempt, exc)
            continue

        logger.info("reorder event=done collection=%s photos=%s", collection_id, len(photo_ids))
        return


async def detach_photo(db: AsyncSession, collection_id: UUID, photo_id: UUID) -> None:
    """Remove one photo from a collection; the photo and its asset remain."""
    result = await db.execute(
        delete(CollectionPhoto).where(
            CollectionPhoto.collection_id == collection_id,
            CollectionPhoto.photo_id == photo_id,
        )
    )
    if not result.rowcount:
        await db.rollback()
        raise LookupError("Photo not found in collection")
    await db.commit()
    logger.info("detach event=done collection=%s photo=%s", collection_id, photo_id)


async def list_collection_photos(db: AsyncSession, collection_id: UUID) -> list[dict]:
    result = await db.execute(
        select(
            Photo.id,
            Photo.title,
            Photo.image_id,
            Photo.image_url,
            Photo.image_width,
            Photo.image_height,
            Photo.date_taken,
            CollectionPhoto.position,
        )
        .join(CollectionPhoto, CollectionPhoto.photo_id == Photo.id)
        .where(CollectionPhoto.collection_id == collection_id)
        .order_by(CollectionPhoto.position.asc())
    )
    return [
        {
            "id": str(row["id"]),
            "title": row["title"],
            "image_id": row["image_id"],
            "image_url": row["image_url"],
            "image_width": row["image_width"],
            "image_height": row["image_height"],
            "date_taken": row["date_taken"].isoformat() if row["date_taken"] else None,
            "position": int(row["position"]),
        }
        for row in result.mappings().all()
    ]
