from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from episode_store.schema_migrations import upgrade_document
from episode_store.schemas import ProjectDocument

logger = logging.getLogger(__name__)

PROJECT_PREFIX = "project-"


def project_key(project_id: str) -> str:
    return f"{PROJECT_PREFIX}{project_id}"


class DocumentStore:
    def __init__(self, kv: Any) -> None:
        self._kv = kv

    async def save(self, doc: ProjectDocument) -> None:
        await self._kv.set(project_key(doc.id), doc.to_wire())

    async def save_raw(self, raw: dict[str, Any]) -> None:
        await self._kv.set(project_key(str(raw["id"])), raw)

    async def load_raw(self, project_id: str) -> dict[str, Any] | None:
        raw = await self._kv.get(project_key(project_id))
        if not isinstance(raw, dict):
            return None
        return raw

    async def load(self, project_id: str) -> ProjectDocument | None:
        raw = await self.load_raw(project_id)
        if raw is None:
            return None
        raw.setdefault("id", project_id)
        try:
            return ProjectDocument.model_validate(upgrade_document(raw))
        except (ValidationError, ValueError) as exc:
            logger.error("stored project %s is unreadable: %s", project_id, exc)
            return None

    async def remove(self, project_id: str) -> bool:
        return await self._kv.delete(project_key(project_id))

    async def exists(self, project_id: str) -> bool:
        return await self._kv.raw_size(project_key(project_id)) is not None

    async def list_keys(self) -> set[str]:
        return {key[len(PROJECT_PREFIX) :] for key in await self._kv.keys(PROJECT_PREFIX)}
