from __future__ import annotations

import re
from typing import Protocol, Sequence

from portfolio.core.config import settings

MISC_FOLDER = "misc"
HERO_FOLDER = "hero"
PROFILE_FOLDER = "profile"
RESERVED_FOLDERS = {MISC_FOLDER, HERO_FOLDER, PROFILE_FOLDER}

_INVALID_SLUG_CHARS = re.compile(r"[^a-z0-9-]")
_REPEATED_HYPHENS = re.compile(r"-+")


def sanitize_slug(value: str) -> str:
    slug = _INVALID_SLUG_CHARS.sub("-", value.strip().lower())
    slug = _REPEATED_HYPHENS.sub("-", slug)
    return slug.strip("-")


def _namespace(namespace: str | None) -> str:
    return (namespace if namespace is not None else settings.ASSET_NAMESPACE).strip("/")


def node_segment(node) -> str:
    for candidate in (node.slug, node.title, str(node.id) if node.id else None):
        if candidate:
            segment = sanitize_slug(candidate)
            if segment:
                return segment
    return "untitled"


def folder_for_chain(chain: Sequence, namespace: str | None = None) -> str:
    """``<namespace>/<root-slug>/.../<slug>`` for a root-first ancestor chain."""
    if not chain:
        raise ValueError("A folder path needs at least one collection")
    return "/".join([_namespace(namespace), *(node_segment(node) for node in chain)])


def static_folder(kind: str, namespace: str | None = None) -> str:
    if kind not in RESERVED_FOLDERS:
        raise ValueError(f"Unknown folder kind: {kind}")
    return f"{_namespace(namespace)}/{kind}"


def parse_folder_path(folder_path: str, namespace: str | None = None) -> list[str] | None:
    parts = [part for part in folder_path.strip("/").split("/") if part]
    root = _namespace(namespace).split("/")
    if len(parts) <= len(root) or parts[: len(root)] != root:
        return None
    return parts[len(root):]


class FolderResolver(Protocol):
    async def resolve(self) -> str:
        ...


class StaticFolderResolver:
    def __init__(self, kind: str = MISC_FOLDER, namespace: str | None = None) -> None:
        self._folder = static_folder(kind, namespace)

    async def resolve(self) -> str:
        return self._folder

