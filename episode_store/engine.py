from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from episode_store.broadcast import (
    InMemoryBroadcastHub,
    SyncNotice,
    create_broadcast_channel,
)
from episode_store.bundles import BundleService, ImportReport
from episode_store.defaults import (
    default_project,
    generate_project_id,
    latest_project_by_series,
    new_episode_from_series,
    next_episode_number,
    now_ms,
)
from episode_store.errors import ApiError, MirrorPermissionError, ProjectNotFoundError
from episode_store.handles import BlobRef, iter_blob_refs, owned_by
from episode_store.kv_backends import create_kv_store
from episode_store.merge_guard import MergeGuard
from episode_store.migration import JitMigrator, MigrationReport
from episode_store.mirror import MirrorDirectory, MirrorSync, PermissionPrompt
from episode_store.persister import DebouncedPersister, SaveStatus, SaveTicket
from episode_store.repositories import BlobStore, DocumentStore, MetadataIndex, RootStateRepository
from episode_store.schemas import MetadataEntry, ProjectDocument
from episode_store.settings import EngineSettings

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (Copy)"


class ProjectEngine:
    """Everything one editing session needs, wired together once and passed around.

    The engine also owns the session's active document: the one the UI layer is
    editing and whose changes go through ``update_project``.
    """

    def __init__(self, *, settings: EngineSettings, kv: Any, broadcaster: Any) -> None:
        self.settings = settings
        self.kv = kv
        self.broadcaster = broadcaster
        self.blobs = BlobStore(kv)
        self.documents = DocumentStore(kv)
        self.state = RootStateRepository(
            kv,
            root_key=settings.root_key,
            backup_min_previous_chars=settings.backup_min_previous_chars,
            backup_max_new_chars=settings.backup_max_new_chars,
        )
        self.index = MetadataIndex(self.state)
        self.migrator = JitMigrator(
            blobs=self.blobs,
            documents=self.documents,
            threshold_bytes=settings.migration_threshold_bytes,
            budget_ms=settings.migration_budget_ms,
        )
        self.merge_guard = MergeGuard(self.documents)
        self.persister = DebouncedPersister(
            documents=self.documents,
            index=self.index,
            merge_guard=self.merge_guard,
            broadcaster=broadcaster,
            debounce_ms=settings.debounce_ms,
            max_commit_ms=settings.max_commit_ms,
            saved_display_ms=settings.saved_display_ms,
            error_display_ms=settings.error_display_ms,
        )
        self.persister.add_after_commit_hook(self._mirror_after_commit)
        self.bundles = BundleService(
            documents=self.documents,
            blobs=self.blobs,
            index=self.index,
            migrator=self.migrator,
        )
        self.mirror: MirrorSync | None = None
        self.active: ProjectDocument = default_project()
        self.notices_applied = 0
        broadcaster.subscribe(self._on_notice)

    @property
    def origin(self) -> str:
        return self.broadcaster.origin

    @property
    def save_status(self) -> SaveStatus:
        return self.persister.status

    async def open(self) -> None:
        await self.kv.open()
        await self.broadcaster.start()
        await self.index.refresh()
        if self.settings.mirror_dir and self.mirror is None:
            self.attach_mirror(self.settings.mirror_dir)
        logger.info("episode store opened (store=%s, origin=%s)", self.kv.backend_name, self.origin)

    async def close(self) -> None:
        await self.persister.close()
        await self.broadcaster.close()
        await self.kv.close()

    async def _publish(self, kind: str, project_id: str | None = None) -> None:
        try:
            await self.broadcaster.publish(kind, project_id)
        except Exception as exc:
            logger.warning("failed to broadcast %s for %s: %s", kind, project_id, exc)

    async def _commit_now(self, doc: ProjectDocument) -> None:
        doc.last_modified = max(now_ms(), doc.last_modified + 1)
        await self.documents.save(doc)
        await self.index.upsert(MetadataEntry.from_document(doc))
        await self._publish("project-saved", doc.id)

    async def _rematerialize(self, doc: ProjectDocument) -> int:
        """Copy every blob the document references under keys owned by ``doc.id``."""
        copied = 0
        for slot, ref in list(iter_blob_refs(doc)):
            target_key = slot.key_for(doc.id)
            if ref.blob_type == slot.blob_type and ref.key == target_key:
                continue
            record = await self.blobs.get_record(ref.handle)
            if record is None:
                logger.warning("project %s references missing blob %s", doc.id, ref.handle)
                continue
            slot.set(await self.blobs.put(slot.blob_type, target_key, record.data, record.content_type))
            copied += 1
        return copied

    async def create_project(self, source_series: str | None = None) -> ProjectDocument:
        await self.persister.flush()
        doc = default_project()
        if source_series:
            source = await latest_project_by_series(self.documents, source_series)
            if source is not None:
                logger.info("inheriting series data from %s (project %s)", source_series, source.id)
                doc = new_episode_from_series(source, await next_episode_number(self.documents, source_series))
                await self._rematerialize(doc)
            else:
                logger.warning("no project found for series %s, creating a clean project", source_series)
        await self._commit_now(doc)
        self.active = doc
        logger.info("created project %s", doc.id)
        return doc

    async def load_project(self, project_id: str) -> ProjectDocument:
        await self.persister.flush()
        doc = await self.documents.load(project_id)
        if doc is None:
            logger.error("project %s not found, resetting session to a clean project", project_id)
            self.active = default_project()
            raise ProjectNotFoundError(project_id)
        await self.migrator.migrate(doc)
        self.active = doc
        return doc

    def update_project(self, changes: Mapping[str, Any]) -> SaveTicket:
        """Apply wire-format (camelCase) field changes to the active document and schedule a save."""
        wire = self.active.to_wire()
        wire.update(changes)
        wire["id"] = self.active.id
        self.active = ProjectDocument.model_validate(wire)
        return self.persister.schedule(self.active)

    def schedule_save(self, doc: ProjectDocument | None = None) -> SaveTicket:
        return self.persister.schedule(doc or self.active)

    async def flush(self, project_id: str | None = None) -> None:
        await self.persister.flush(project_id)

    async def duplicate_project(self, project_id: str) -> ProjectDocument:
        await self.persister.flush(project_id)
        source = await self.documents.load(project_id)
        if source is None:
            raise ProjectNotFoundError(project_id)
        wire = source.to_wire()
        wire["id"] = generate_project_id()
        wire["episodeName"] = f"{source.episode_name}{COPY_SUFFIX}"
        doc = ProjectDocument.model_validate(wire)
        copied = await self._rematerialize(doc)
        await self._commit_now(doc)
        logger.info("duplicated project %s as %s (%d blob(s) copied)", project_id, doc.id, copied)
        return doc

    async def _referenced_elsewhere(self, project_id: str) -> set[str]:
        handles: set[str] = set()
        for other_id in await self.documents.list_keys():
            if other_id == project_id:
                continue
            other = await self.documents.load(other_id)
            if other is None:
                continue
            handles.update(ref.handle for _, ref in iter_blob_refs(other))
        return handles

    async def delete_project(self, project_id: str) -> dict[str, Any]:
        self.persister.cancel(project_id)
        await self.persister.settle(project_id)
        await self.index.refresh()
        had_entry = self.index.get(project_id) is not None
        doc = await self.documents.load(project_id)
        if doc is None and not had_entry and not await self.documents.exists(project_id):
            raise ProjectNotFoundError(project_id)

        candidates: dict[str, BlobRef] = {}
        if doc is not None:
            candidates.update({ref.handle: ref for _, ref in iter_blob_refs(doc) if owned_by(ref, project_id)})
        candidates.update({ref.handle: ref for ref in await self.blobs.list_refs() if owned_by(ref, project_id)})
        # An id that extends this one ("p1" vs "p1-cut-a") owns keys that also match this prefix.
        longer_ids = [
            other for other in await self.documents.list_keys() if other != project_id and other.startswith(f"{project_id}-")
        ]
        if longer_ids:
            candidates = {
                handle: ref
                for handle, ref in candidates.items()
                if not any(owned_by(ref, other) for other in longer_ids)
            }
        shared = await self._referenced_elsewhere(project_id)
        removed_blobs = 0
        for handle in candidates:
            if handle in shared:
                logger.warning("keeping blob %s still referenced by another project", handle)
                continue
            if await self.blobs.delete(handle):
                removed_blobs += 1

        await self.documents.remove(project_id)
        await self.index.drop(project_id)
        await self._publish("project-deleted", project_id)
        session_reset = self.active.id == project_id
        if session_reset:
            self.active = default_project()
        logger.info("deleted project %s (%d blob(s) removed)", project_id, removed_blobs)
        return {"project_id": project_id, "blobs_removed": removed_blobs, "session_reset": session_reset}

    async def delete_series(self, series_name: str) -> list[str]:
        entries = await self.index.refresh()
        ids = {project_id for project_id, entry in entries.items() if entry.series_name == series_name}
        for project_id in await self.documents.list_keys():
            if project_id in ids:
                continue
            doc = await self.documents.load(project_id)
            if doc is not None and doc.series_name == series_name:
                ids.add(project_id)
        for project_id in sorted(ids):
            await self.delete_project(project_id)
        return sorted(ids)

    async def list_projects(self) -> list[MetadataEntry]:
        entries = await self.index.refresh()
        return sorted(entries.values(), key=lambda entry: entry.last_modified, reverse=True)

    async def recover_orphans(self) -> list[str]:
        entries = await self.index.refresh()
        orphan_ids = sorted(await self.documents.list_keys() - set(entries))
        recovered: list[MetadataEntry] = []
        for project_id in orphan_ids:
            doc = await self.documents.load(project_id)
            if doc is None:
                logger.warning("orphaned project %s is unreadable, not indexed", project_id)
                continue
            recovered.append(MetadataEntry.from_document(doc))
        if recovered:
            await self.index.upsert_many(recovered)
            await self._publish("index-rebuilt")
            logger.info("recovered %d orphaned project(s)", len(recovered))
        return [entry.id for entry in recovered]

    async def migrate_all(self) -> list[MigrationReport]:
        await self.persister.flush()
        reports = await self.migrator.migrate_all()
        if any(report.project_id == self.active.id and report.changed for report in reports):
            reloaded = await self.documents.load(self.active.id)
            if reloaded is not None:
                self.active = reloaded
        return reports

    def attach_mirror(self, path: str, *, prompt: PermissionPrompt | None = None) -> MirrorDirectory:
        directory = MirrorDirectory(path, prompt=prompt)
        self.mirror = MirrorSync(
            directory,
            documents=self.documents,
            blobs=self.blobs,
            index=self.index,
            migrator=self.migrator,
        )
        logger.info("mirror directory attached: %s", directory.path)
        return directory

    def detach_mirror(self) -> None:
        self.mirror = None

    def _require_mirror(self) -> MirrorSync:
        if self.mirror is None:
            raise ApiError(
                code="MIRROR_NOT_CONFIGURED",
                message="no mirror directory attached",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        return self.mirror

    async def sync_mirror_all(self) -> dict[str, Any]:
        mirror = self._require_mirror()
        await self.persister.flush()
        return await mirror.sync_all()

    async def restore_from_mirror(self) -> dict[str, Any]:
        mirror = self._require_mirror()
        await self.persister.flush()
        result = await mirror.restore()
        if self.active.id in result["restored"]:
            reloaded = await self.documents.load(self.active.id)
            if reloaded is not None:
                self.active = reloaded
        await self._publish("index-rebuilt")
        return result

    async def _mirror_after_commit(self, doc: ProjectDocument) -> None:
        if self.mirror is None or not self.settings.mirror_on_commit:
            return
        try:
            await self.mirror.sync_one(doc)
        except MirrorPermissionError as exc:
            logger.warning("skipping mirror sync for project %s: %s", doc.id, exc.message)

    async def export_bundle(self, project_ids: list[str] | None = None) -> bytes:
        await self.persister.flush()
        return await self.bundles.export(project_ids)

    async def import_bundle(self, data: bytes) -> ImportReport:
        report = await self.bundles.import_bundle(data)
        if report.imported:
            await self._publish("index-rebuilt")
        return report

    async def _on_notice(self, notice: SyncNotice) -> None:
        if notice.origin == self.origin:
            return
        if self.persister.status is not SaveStatus.IDLE:
            logger.debug("ignoring %s notice for %s while saving", notice.kind, notice.project_id)
            return
        await self.index.refresh()
        self.notices_applied += 1


def build_engine(
    settings: EngineSettings | None = None,
    *,
    hub: InMemoryBroadcastHub | None = None,
    kv: Any = None,
) -> ProjectEngine:
    settings = settings or EngineSettings.from_env()
    store = kv if kv is not None else create_kv_store(settings.store_backend, sqlite_path=settings.sqlite_path)
    broadcaster = create_broadcast_channel(
        settings.broadcast_backend,
        hub=hub,
        dsn=settings.redis_dsn,
        channel=settings.broadcast_channel,
    )
    return ProjectEngine(settings=settings, kv=store, broadcaster=broadcaster)
