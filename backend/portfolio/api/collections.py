from uuid import UUID

from pydantic import BaseModel
from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio.core.database import get_db
from portfolio.models.collection import Collection
from portfolio.services.associations import (
    ReorderError,
    detach_photo,
    list_collection_photos,
    reorder_collection,
)
from portfolio.services.collections import (
    CollectionNotFound,
    CollectionTreeError,
    create_collection,
    delete_collection,
    get_collection_tree,
    move_collection,
)

router = APIRouter(prefix="/collections", tags=["collections"])


class CreateCollectionPayload(BaseModel):
    title: str
    slug: str | None = None
    description: str | None = None
    parent_id: str | None = None


class MoveCollectionPayload(BaseModel):
    parent_id: str | None = None


class ReorderPhotosPayload(BaseModel):
    photo_ids: list[str]


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def _serialize(collection: Collection) -> dict:
    return {
        "id": str(collection.id),
        "title": collection.title,
        "slug": collection.slug,
        "description": collection.description,
        "parent_id": str(collection.parent_id) if collection.parent_id else None,
        "position": collection.position,
    }


async def _require_collection(db: AsyncSession, collection_id: str) -> Collection:
    collection = await db.get(Collection, _parse_uuid(collection_id, "collection id"))
    if collection is None:
        raise HTTPException(status_code=404, detail="Collection not found")
    return collection


@router.get("")
async def list_collections(db: AsyncSession = Depends(get_db)):
    return await get_collection_tree(db)


@router.post("")
async def create_collection_endpoint(
    payload: CreateCollectionPayload,
    db: AsyncSession = Depends(get_db),
):
    parent_id = _parse_uuid(payload.parent_id, "parent_id") if payload.parent_id else None
    if len(payload.title.strip()) > 200:
        raise HTTPException(status_code=400, detail="Collection title must be 200 characters or fewer")
    try:
        collection = await create_collection(
            db,
            payload.title,
            slug=payload.slug,
            parent_id=parent_id,
            description=payload.description,
        )
    except CollectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CollectionTreeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize(collection)


@router.patch("/{collection_id}/parent")
async def move_collection_endpoint(
    payload: MoveCollectionPayload,
    collection_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    collection_uuid = _parse_uuid(collection_id, "collection id")
    parent_id = _parse_uuid(payload.parent_id, "parent_id") if payload.parent_id else None
    try:
        collection = await move_collection(db, collection_uuid, parent_id)
    except CollectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CollectionTreeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _serialize(collection)


@router.delete("/{collection_id}")
async def delete_collection_endpoint(
    collection_id: str = Path(...),
    force: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
):
    collection_uuid = _parse_uuid(collection_id, "collection id")
    try:
        deleted = await delete_collection(db, collection_uuid, force=force)
    except CollectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CollectionTreeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"ok": True, "deleted": deleted}


@router.get("/{collection_id}/photos")
async def list_photos_endpoint(
    collection_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    collection = await _require_collection(db, collection_id)
    return {
        **_serialize(collection),
        "photos": await list_collection_photos(db, collection.id),
    }


@router.put("/{collection_id}/photos/order")
async def reorder_photos_endpoint(
    payload: ReorderPhotosPayload,
    collection_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    collection = await _require_collection(db, collection_id)
    photo_ids = [_parse_uuid(photo_id, "photo id") for photo_id in payload.photo_ids]
    try:
        await reorder_collection(db, collection.id, photo_ids)
    except ReorderError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"ok": True, "photos": await list_collection_photos(db, collection.id)}


@router.delete("/{collection_id}/photos/{photo_id}")
async def detach_photo_endpoint(
    collection_id: str = Path(...),
    photo_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    collection = await _require_collection(db, collection_id)
    try:
        await detach_photo(db, collection.id, _parse_uuid(photo_id, "photo id"))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}
