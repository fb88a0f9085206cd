from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from episode_store.errors import ApiError
from episode_store.handles import decode_inline_literal, is_inline_literal, iter_binary_slots
from episode_store.schemas import ProjectDocument

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    project_id: str
    migrated: list[str] = field(default_factory=list)
    stripped: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    bytes_moved: int = 0
    budget_exceeded: bool = False
    saved: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.migrated or self.stripped)

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "migrated": list(self.migrated),
            "stripped": list(self.stripped),
            "deferred": list(self.deferred),
            "bytes_moved": self.bytes_moved,
            "budget_exceeded": self.budget_exceeded,
            "saved": self.saved,
        }


class JitMigrator:
    """Moves large inline data URLs out of a loaded document into the blob store.

    Fields are rewritten in place on the loaded model. Once the time budget is
    spent, remaining large literals are dropped instead of migrated; the degraded
    document is still saved so the next load starts clean.
    """

    def __init__(
        self,
        *,
        blobs: Any,
        documents: Any,
        threshold_bytes: int = 50 * 1024,
        budget_ms: int = 30000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._blobs = blobs
        self._documents = documents
        self.threshold_bytes = threshold_bytes
        self.budget_ms = budget_ms
        self._clock = clock

    def needs_migration(self, value: Any) -> bool:
        return is_inline_literal(value) and len(value) > self.threshold_bytes

    async def migrate(self, doc: ProjectDocument) -> MigrationReport:
        report = MigrationReport(project_id=doc.id)
        deadline = self._clock() + self.budget_ms / 1000.0
        for slot in iter_binary_slots(doc):
            value = slot.get()
            if not self.needs_migration(value):
                continue
            if report.budget_exceeded or self._clock() > deadline:
                report.budget_exceeded = True
                slot.set(None)
                report.stripped.append(slot.label)
                continue
            try:
                payload, content_type = decode_inline_literal(value)
            except ValueError:
                logger.warning("stripping undecodable inline literal %s in project %s", slot.label, doc.id)
                slot.set(None)
                report.stripped.append(slot.label)
                continue
            try:
                handle = await self._blobs.put(slot.blob_type, slot.key_for(doc.id), payload, content_type)
            except ApiError as exc:
                logger.warning("could not migrate %s in project %s: %s", slot.label, doc.id, exc.message)
                report.deferred.append(slot.label)
                continue
            slot.set(handle)
            report.migrated.append(slot.label)
            report.bytes_moved += len(payload)
            del payload
        if report.budget_exceeded:
            logger.warning(
                "migration budget of %dms exceeded for project %s, stripped %d field(s)",
                self.budget_ms,
                doc.id,
                len(report.stripped),
            )
        if report.changed:
            await self._documents.save(doc)
            report.saved = True
            logger.info(
                "migrated project %s: %d field(s) moved (%d bytes), %d stripped",
                doc.id,
                len(report.migrated),
                report.bytes_moved,
                len(report.stripped),
            )
        return report

    async def migrate_all(self) -> list[MigrationReport]:
        reports: list[MigrationReport] = []
        for project_id in sorted(await self._documents.list_keys()):
            doc = await self._documents.load(project_id)
            if doc is None:
                continue
            reports.append(await self.migrate(doc))
        return reports
