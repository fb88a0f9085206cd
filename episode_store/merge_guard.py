from __future__ import annotations

import copy
import logging
from typing import Any

from episode_store.schemas import ProjectDocument

logger = logging.getLogger(__name__)


def is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def _identity(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    item_id = item.get("id")
    if item_id is None or item_id == "":
        return None
    return str(item_id)


def _is_identified_list(items: list[Any]) -> bool:
    return all(_identity(item) is not None for item in items)


def merge_items(memory: list[Any], disk: list[Any]) -> list[Any]:
    disk_by_id = {_identity(item): item for item in disk}
    merged: list[Any] = []
    seen: set[str] = set()
    for item in memory:
        item_id = _identity(item)
        seen.add(item_id)  # type: ignore[arg-type]
        counterpart = disk_by_id.get(item_id)
        merged.append(merge_values(item, counterpart) if counterpart is not None else item)
    for item in disk:
        if _identity(item) not in seen:
            merged.append(copy.deepcopy(item))
    return merged


def merge_mapping(memory: dict[str, Any], disk: dict[str, Any]) -> dict[str, Any]:
    merged = dict(memory)
    for key, disk_value in disk.items():
        merged[key] = merge_values(memory.get(key), disk_value)
    return merged


def merge_values(memory: Any, disk: Any) -> Any:
    """Fill gaps in ``memory`` from ``disk``; a present in-memory value always wins."""
    if is_empty(memory):
        return memory if is_empty(disk) else copy.deepcopy(disk)
    if isinstance(memory, dict) and isinstance(disk, dict):
        return merge_mapping(memory, disk)
    if isinstance(memory, list) and isinstance(disk, list):
        if memory and disk and _is_identified_list(memory) and _is_identified_list(disk):
            return merge_items(memory, disk)
    return memory


def merge_documents(memory: ProjectDocument, disk: ProjectDocument) -> ProjectDocument:
    merged = merge_values(memory.to_wire(), disk.to_wire())
    merged["id"] = memory.id
    return ProjectDocument.model_validate(merged)


class MergeGuard:
    """Protects richer on-disk data from a partially hydrated in-memory document.

    Triggers only when the in-memory primary collection (``script``) is empty
    while the stored copy still has items.
    """

    def __init__(self, documents: Any) -> None:
        self._documents = documents

    async def reconcile(self, doc: ProjectDocument) -> tuple[ProjectDocument, bool]:
        if doc.script:
            return doc, False
        disk = await self._documents.load(doc.id)
        if disk is None or not disk.script:
            return doc, False
        logger.warning(
            "project %s: in-memory script is empty but disk has %d cut(s), merging with disk copy",
            doc.id,
            len(disk.script),
        )
        return merge_documents(doc, disk), True
