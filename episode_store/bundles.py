from __future__ import annotations

import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from jsonschema import ValidationError
from pydantic import ValidationError as ModelValidationError

from episode_store.defaults import generate_project_id, now_ms
from episode_store.errors import BundleFormatError
from episode_store.handles import BLOB_TYPES, clean_segment, iter_binary_slots, iter_blob_refs, parse_handle
from episode_store.mirror import (
    ASSETS_DIR,
    GLOBAL_POOLS_FILE,
    PROJECTS_DIR,
    asset_file_name,
    asset_stem,
    content_type_for,
    dump_project,
    parse_project_file,
    project_file_name,
)
from episode_store.schemas import MetadataEntry, ProjectDocument

logger = logging.getLogger(__name__)

IMPORTED_SUFFIX = " (Imported)"


@dataclass
class ImportReport:
    imported: list[str] = field(default_factory=list)
    renamed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    assets: int = 0
    missing_assets: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "imported": list(self.imported),
            "renamed": dict(self.renamed),
            "skipped": list(self.skipped),
            "assets": self.assets,
            "missing_assets": list(self.missing_assets),
        }


def _relative_parts(name: str) -> tuple[str, ...]:
    """Path parts below the bundle root; a single wrapping folder is ignored."""
    parts = PurePosixPath(name).parts
    for anchor in (PROJECTS_DIR, ASSETS_DIR, GLOBAL_POOLS_FILE):
        if anchor in parts:
            return parts[parts.index(anchor) :]
    return parts


class BundleService:
    """Zip bundles in the mirror layout, for moving projects between stores."""

    def __init__(self, *, documents: Any, blobs: Any, index: Any, migrator: Any = None) -> None:
        self._documents = documents
        self._blobs = blobs
        self._index = index
        self._migrator = migrator

    async def export(self, project_ids: list[str] | None = None) -> bytes:
        ids = project_ids or sorted(await self._documents.list_keys())
        buffer = io.BytesIO()
        written: set[str] = set()
        exported = 0
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for project_id in ids:
                doc = await self._documents.load(project_id)
                if doc is None:
                    logger.warning("export skipped missing project %s", project_id)
                    continue
                archive.writestr(f"{PROJECTS_DIR}/{project_file_name(doc.id)}", dump_project(doc))
                exported += 1
                for _, ref in iter_blob_refs(doc):
                    if ref.handle in written:
                        continue
                    record = await self._blobs.get_record(ref.handle)
                    if record is None:
                        continue
                    archive.writestr(
                        f"{ASSETS_DIR}/{ref.blob_type}/{asset_file_name(ref.key, record.content_type)}",
                        record.data,
                    )
                    written.add(ref.handle)
            pools = await self._index.global_pools()
            archive.writestr(GLOBAL_POOLS_FILE, json.dumps(pools, ensure_ascii=False, indent=2))
        logger.info("exported %d project(s) with %d asset(s)", exported, len(written))
        return buffer.getvalue()

    async def import_bundle(self, data: bytes) -> ImportReport:
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as exc:
            raise BundleFormatError(f"bundle is not a zip archive: {exc}") from exc

        with archive:
            project_entries: list[str] = []
            asset_entries: dict[tuple[str, str], str] = {}
            pools_entry: str | None = None
            for name in archive.namelist():
                if name.endswith("/"):
                    continue
                parts = _relative_parts(name)
                if len(parts) == 2 and parts[0] == PROJECTS_DIR and parts[1].endswith(".json"):
                    project_entries.append(name)
                elif len(parts) == 3 and parts[0] == ASSETS_DIR and parts[1] in BLOB_TYPES:
                    asset_entries[(parts[1], asset_stem(parts[2]))] = name
                elif parts == (GLOBAL_POOLS_FILE,):
                    pools_entry = name
            if not project_entries:
                raise BundleFormatError("bundle contains no project files")

            report = ImportReport()
            used_ids = set(await self._documents.list_keys())
            entries: list[MetadataEntry] = []
            for name in sorted(project_entries):
                try:
                    doc = parse_project_file(json.loads(archive.read(name)))
                except (json.JSONDecodeError, UnicodeDecodeError, ValidationError, ModelValidationError, ValueError) as exc:
                    logger.warning("skipping invalid project file %s in bundle: %s", name, exc)
                    report.skipped.append(name)
                    continue
                original_id = doc.id
                if original_id in used_ids:
                    doc.id = generate_project_id()
                    doc.episode_name = f"{doc.episode_name}{IMPORTED_SUFFIX}"
                    report.renamed[original_id] = doc.id
                used_ids.add(doc.id)
                await self._rehome_blobs(doc, archive, asset_entries, report)
                doc.last_modified = now_ms()
                await self._documents.save(doc)
                if self._migrator is not None:
                    await self._migrator.migrate(doc)
                entries.append(MetadataEntry.from_document(doc))
                report.imported.append(doc.id)

            if pools_entry is not None:
                try:
                    pools = json.loads(archive.read(pools_entry))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    pools = None
                if isinstance(pools, dict) and pools:
                    await self._index.merge_global_pools(pools)

        if entries:
            await self._index.upsert_many(entries)
        logger.info(
            "imported %d project(s) (%d renamed, %d skipped)",
            len(report.imported),
            len(report.renamed),
            len(report.skipped),
        )
        return report

    async def _rehome_blobs(
        self,
        doc: ProjectDocument,
        archive: zipfile.ZipFile,
        asset_entries: dict[tuple[str, str], str],
        report: ImportReport,
    ) -> None:
        for slot in iter_binary_slots(doc):
            ref = parse_handle(slot.get())
            if ref is None:
                continue
            target_key = slot.key_for(doc.id)
            entry = asset_entries.get((ref.blob_type, clean_segment(ref.key)))
            if entry is not None:
                payload = archive.read(entry)
                content_type = content_type_for(entry)
            else:
                record = await self._blobs.get_record(ref.handle)
                if record is None:
                    logger.warning("bundle has no asset for %s in project %s", ref.handle, doc.id)
                    report.missing_assets.append(ref.handle)
                    slot.set(None)
                    continue
                payload, content_type = record.data, record.content_type
            slot.set(await self._blobs.put(slot.blob_type, target_key, payload, content_type))
            report.assets += 1
