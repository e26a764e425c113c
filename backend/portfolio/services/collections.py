from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio.models.collection import Collection, CollectionPhoto
from portfolio.services.folders import RESERVED_FOLDERS, folder_for_chain, sanitize_slug

logger = logging.getLogger(__name__)


class CollectionTreeError(ValueError):
    pass


class CollectionNotFound(CollectionTreeError):
    pass


@dataclass(frozen=True)
class CollectionNode:
    id: UUID
    title: str
    slug: str
    parent_id: UUID | None
    position: int


class CollectionIndex:
    """Id-indexed view of the whole collection tree, built once per request."""

    def __init__(self, nodes: list[CollectionNode]) -> None:
        self._nodes = {node.id: node for node in nodes}
        self._children: dict[UUID | None, list[UUID]] = {}
        for node in sorted(nodes, key=lambda item: (item.position, item.title)):
            self._children.setdefault(node.parent_id, []).append(node.id)

    def get(self, node_id: UUID) -> CollectionNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise CollectionNotFound(f"Collection {node_id} not found")
        return node

    def children_of(self, node_id: UUID | None) -> list[CollectionNode]:
        return [self._nodes[child_id] for child_id in self._children.get(node_id, [])]

    def ancestor_chain(self, node_id: UUID) -> list[CollectionNode]:
        """Root-first chain ending at ``node_id``."""
        chain: list[CollectionNode] = []
        seen: set[UUID] = set()
        current: UUID | None = node_id
        while current is not None:
            if current in seen:
                raise CollectionTreeError(f"Collection {node_id} has a cyclic parent chain")
            seen.add(current)
            node = self.get(current)
            chain.append(node)
            current = node.parent_id
        chain.reverse()
        return chain

    def descendant_ids(self, node_id: UUID) -> list[UUID]:
        result: list[UUID] = []
        seen: set[UUID] = set()
        stack = list(self._children.get(node_id, []))
        while stack:
            child_id = stack.pop()
            if child_id in seen:
                continue
            seen.add(child_id)
            result.append(child_id)
            stack.extend(self._children.get(child_id, []))
        return result

    def would_create_cycle(self, node_id: UUID, new_parent_id: UUID | None) -> bool:
        if new_parent_id is None:
            return False
        if new_parent_id == node_id:
            return True
        return new_parent_id in self.descendant_ids(node_id)

    def _depths(self) -> dict[UUID, int]:
        depths: dict[UUID, int] = {}
        for node_id in self._nodes:
            path: list[UUID] = []
            current: UUID | None = node_id
            while current is not None and current not in depths and current in self._nodes:
                if current in path:
                    raise CollectionTreeError(f"Collection {current} has a cyclic parent chain")
                path.append(current)
                current = self._nodes[current].parent_id
            base = depths.get(current, -1) if current is not None else -1
            for offset, item in enumerate(reversed(path), start=1):
                depths[item] = base + offset
        return depths

    def media_totals(self, direct_counts: dict[UUID, int]) -> dict[UUID, int]:
        """Associations under each node, descendants included, in one pass."""
        totals = {node_id: int(direct_counts.get(node_id, 0)) for node_id in self._nodes}
        depths = self._depths()
        for node_id in sorted(self._nodes, key=lambda item: depths[item], reverse=True):
            parent_id = self._nodes[node_id].parent_id
            if parent_id is not None and parent_id in totals:
                totals[parent_id] += totals[node_id]
        return totals


async def load_collection_index(db: AsyncSession) -> CollectionIndex:
    result = await db.execute(
        select(
            Collection.id,
            Collection.title,
            Collection.slug,
            Collection.parent_id,
            Collection.position,
        )
    )
    return CollectionIndex([CollectionNode(*row) for row in result.all()])


class CollectionFolderResolver:
    """Resolves a collection's asset folder from its full ancestor chain.

    The read transaction is closed before returning, so the session holds no
    connection while uploads run.
    """

    def __init__(self, db: AsyncSession, collection_id: UUID, namespace: str | None = None) -> None:
        self._db = db
        self._collection_id = collection_id
        self._namespace = namespace

    async def resolve(self) -> str:
        index = await load_collection_index(self._db)
        await self._db.commit()
        return folder_for_chain(index.ancestor_chain(self._collection_id), self._namespace)


async def direct_media_counts(db: AsyncSession) -> dict[UUID, int]:
    result = await db.execute(
        select(CollectionPhoto.collection_id, func.count()).group_by(CollectionPhoto.collection_id)
    )
    return {collection_id: int(count) for collection_id, count in result.all()}


async def get_collection_tree(db: AsyncSession) -> list[dict]:
    index = await load_collection_index(db)
    direct = await direct_media_counts(db)
    totals = index.media_totals(direct)

    def _serialize(node: CollectionNode) -> dict:
        return {
            "id": str(node.id),
            "title": node.title,
            "slug": node.slug,
            "parent_id": str(node.parent_id) if node.parent_id else None,
            "position": node.position,
            "photo_count": direct.get(node.id, 0),
            "total_photo_count": totals[node.id],
            "children": [_serialize(child) for child in index.children_of(node.id)],
        }

    return [_serialize(node) for node in index.children_of(None)]


async def _unique_slug(db: AsyncSession, base_slug: str) -> str:
    result = await db.execute(select(Collection.slug).where(Collection.slug.like(f"{base_slug}%")))
    taken = set(result.scalars().all()) | RESERVED_FOLDERS
    if base_slug not in taken:
        return base_slug
    suffix = 2
    while f"{base_slug}-{suffix}" in taken:
        suffix += 1
    return f"{base_slug}-{suffix}"


async def create_collection(
    db: AsyncSession,
    title: str,
    slug: str | None = None,
    parent_id: UUID | None = None,
    description: str | None = None,
) -> Collection:
    title = title.strip()
    if not title:
        raise CollectionTreeError("Collection title is required")

    if parent_id is not None:
        parent = await db.get(Collection, parent_id)
        if parent is None:
            raise CollectionNotFound(f"Parent collection {parent_id} not found")

    base_slug = sanitize_slug(slug or title) or "untitled"
    unique_slug = await _unique_slug(db, base_slug)

    max_position_result = await db.execute(
        select(func.max(Collection.position)).where(
            Collection.parent_id.is_(None) if parent_id is None else Collection.parent_id == parent_id
        )
    )
    max_position = max_position_result.scalar_one()
    next_position = 0 if max_position is None else max_position + 1

    collection = Collection(
        title=title,
        slug=unique_slug,
        parent_id=parent_id,
        description=description,
        position=next_position,
    )
    db.add(collection)
    await db.commit()
    await db.refresh(collection)
    logger.info("collection created id=%s slug=%s parent=%s", collection.id, collection.slug, parent_id)
    return collection


async def move_collection(db: AsyncSession, collection_id: UUID, new_parent_id: UUID | None) -> Collection:
    index = await load_collection_index(db)
    index.get(collection_id)
    if new_parent_id is not None:
        index.get(new_parent_id)
    if index.would_create_cycle(collection_id, new_parent_id):
        raise CollectionTreeError("A collection cannot be moved under itself or its descendants")

    collection = await db.get(Collection, collection_id)
    collection.parent_id = new_parent_id
    await db.commit()
    await db.refresh(collection)
    logger.info("collection moved id=%s parent=%s", collection_id, new_parent_id)
    return collection


async def delete_collection(db: AsyncSession, collection_id: UUID, force: bool = False) -> int:
    """Delete a collection; with ``force`` its whole subtree goes too.

    Only associations and nodes are removed. Remote assets and photo rows are
    left alone. Returns the number of collections deleted.
    """
    index = await load_collection_index(db)
    index.get(collection_id)
    descendants = index.descendant_ids(collection_id)
    subtree = [collection_id, *descendants]

    link_count_result = await db.execute(
        select(func.count()).select_from(CollectionPhoto).where(CollectionPhoto.collection_id.in_(subtree))
    )
    link_count = int(link_count_result.scalar_one() or 0)

    if not force and (descendants or link_count):
        raise CollectionTreeError(
            f"Collection has {len(descendants)} sub-collections and {link_count} photos; use force to delete"
        )

    depths = {node_id: len(index.ancestor_chain(node_id)) for node_id in subtree}
    await db.execute(delete(CollectionPhoto).where(CollectionPhoto.collection_id.in_(subtree)))
    for node_id in sorted(subtree, key=lambda item: depths[item], reverse=True):
        await db.execute(delete(Collection).where(Collection.id == node_id))
    await db.commit()
    logger.info("collection deleted id=%s subtree=%s links=%s", collection_id, len(subtree), link_count)
    return len(subtree)
