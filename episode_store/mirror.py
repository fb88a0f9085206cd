from __future__ import annotations

import inspect
import json
import logging
import mimetypes
import os
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from jsonschema import ValidationError, validate
from pydantic import ValidationError as ModelValidationError

from episode_store.errors import MirrorPermissionError
from episode_store.handles import BLOB_TYPES, clean_segment, iter_blob_refs, make_handle
from episode_store.schema_migrations import upgrade_document
from episode_store.schemas import MetadataEntry, ProjectDocument

logger = logging.getLogger(__name__)

PROJECTS_DIR = "projects"
ASSETS_DIR = "assets"
GLOBAL_POOLS_FILE = "global-research.json"

_BINARY_FIELD = {"type": ["string", "null"]}

PROJECT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "lastModified": {"type": "integer", "minimum": 0},
        "version": {"type": "integer", "minimum": 1},
        "seriesName": {"type": ["string", "null"]},
        "episodeName": {"type": ["string", "null"]},
        "episodeNumber": {"type": ["integer", "null"]},
        "script": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["integer", "string"]},
                    "finalImageUrl": _BINARY_FIELD,
                    "draftImageUrl": _BINARY_FIELD,
                    "audioUrl": _BINARY_FIELD,
                    "sfxUrl": _BINARY_FIELD,
                    "videoUrl": _BINARY_FIELD,
                },
            },
        },
        "assetDefinitions": {"type": ["object", "array"]},
        "masterStyle": {"type": ["object", "string", "null"]},
        "styleAnchor": {"type": ["object", "null"]},
        "thumbnailUrl": _BINARY_FIELD,
    },
}

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/ogg": "ogg",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}


def validate_project_file(raw: Any) -> dict[str, Any]:
    """Validate a serialized project file; raises ``jsonschema.ValidationError``."""
    validate(instance=raw, schema=PROJECT_FILE_SCHEMA)
    return raw


def parse_project_file(raw: Any) -> ProjectDocument:
    validate_project_file(raw)
    return ProjectDocument.model_validate(upgrade_document(dict(raw)))


def extension_for(content_type: str) -> str:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime in _EXTENSIONS:
        return _EXTENSIONS[mime]
    guessed = mimetypes.guess_extension(mime) if mime else None
    return guessed.lstrip(".") if guessed else "bin"


def content_type_for(filename: str) -> str | None:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    for mime, known in _EXTENSIONS.items():
        if known == ext:
            return mime
    return mimetypes.guess_type(filename)[0]


def project_file_name(project_id: str) -> str:
    return f"project-{clean_segment(project_id)}.json"


def asset_file_name(key: str, content_type: str) -> str:
    return f"{clean_segment(key)}.{extension_for(content_type)}"


def asset_stem(filename: str) -> str:
    return filename.rsplit(".", 1)[0] if "." in filename else filename


def asset_key_map(docs: Iterable[ProjectDocument]) -> dict[tuple[str, str], str]:
    """Map ``(type, sanitized file stem)`` back to the original blob key."""
    mapping: dict[tuple[str, str], str] = {}
    for doc in docs:
        for _, ref in iter_blob_refs(doc):
            mapping[(ref.blob_type, clean_segment(ref.key))] = ref.key
    return mapping


def dump_project(doc: ProjectDocument) -> str:
    return json.dumps(doc.to_wire(), ensure_ascii=False, indent=2)


class MirrorPermission(str, Enum):
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"


PermissionPrompt = Callable[[Path], Awaitable[bool] | bool]


class MirrorDirectory:
    """A user-chosen directory plus its revocable write permission.

    The permission is never cached as trusted: ``query_permission`` re-checks the
    directory on every call. Without a prompt callback the directory counts as
    operator-configured and is approved on request, unless it was revoked.
    """

    def __init__(self, path: str | Path, *, prompt: PermissionPrompt | None = None) -> None:
        self.path = Path(path).expanduser()
        self._prompt = prompt
        self._granted = False
        self._revoked = False

    def query_permission(self) -> MirrorPermission:
        if self._revoked:
            return MirrorPermission.DENIED
        if not self._granted:
            return MirrorPermission.PROMPT
        if not self.path.is_dir() or not os.access(self.path, os.W_OK | os.X_OK):
            return MirrorPermission.PROMPT
        return MirrorPermission.GRANTED

    async def request_permission(self) -> MirrorPermission:
        state = self.query_permission()
        if state is MirrorPermission.GRANTED:
            return state
        if self._prompt is None:
            approved = not self._revoked
        else:
            answer = self._prompt(self.path)
            approved = bool(await answer) if inspect.isawaitable(answer) else bool(answer)
        if not approved:
            logger.warning("mirror directory permission denied for %s", self.path)
            return MirrorPermission.DENIED
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("cannot create mirror directory %s: %s", self.path, exc)
            return MirrorPermission.DENIED
        self._granted = True
        self._revoked = False
        return self.query_permission()

    def revoke(self) -> None:
        self._revoked = True
        self._granted = False

    async def ensure_permission(self) -> None:
        if self.query_permission() is MirrorPermission.GRANTED:
            return
        if await self.request_permission() is not MirrorPermission.GRANTED:
            raise MirrorPermissionError(str(self.path))


async def _write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(tmp, "wb") as fh:
        await fh.write(payload)
    await aiofiles.os.replace(tmp, path)


async def _write_text(path: Path, text: str) -> None:
    await _write_bytes(path, text.encode("utf-8"))


async def _read_json(path: Path) -> Any:
    async with aiofiles.open(path, "r", encoding="utf-8") as fh:
        return json.loads(await fh.read())


async def _read_bytes(path: Path) -> bytes:
    async with aiofiles.open(path, "rb") as fh:
        return await fh.read()


class MirrorSync:
    def __init__(
        self,
        directory: MirrorDirectory,
        *,
        documents: Any,
        blobs: Any,
        index: Any,
        migrator: Any = None,
    ) -> None:
        self.directory = directory
        self._documents = documents
        self._blobs = blobs
        self._index = index
        self._migrator = migrator

    @property
    def root(self) -> Path:
        return self.directory.path

    async def _write_project(self, doc: ProjectDocument, written: set[str]) -> int:
        await _write_text(self.root / PROJECTS_DIR / project_file_name(doc.id), dump_project(doc))
        assets = 0
        for slot, ref in iter_blob_refs(doc):
            if ref.handle in written:
                continue
            record = await self._blobs.get_record(ref.handle)
            if record is None:
                logger.warning("project %s references missing blob %s (%s)", doc.id, ref.handle, slot.label)
                continue
            target = self.root / ASSETS_DIR / ref.blob_type / asset_file_name(ref.key, record.content_type)
            await _write_bytes(target, record.data)
            written.add(ref.handle)
            assets += 1
        return assets

    async def sync_one(self, doc: ProjectDocument) -> dict[str, Any]:
        await self.directory.ensure_permission()
        assets = await self._write_project(doc, set())
        logger.info("mirrored project %s to %s (%d asset(s))", doc.id, self.root, assets)
        return {"project_id": doc.id, "assets": assets}

    async def sync_all(self) -> dict[str, Any]:
        await self.directory.ensure_permission()
        written: set[str] = set()
        projects: list[str] = []
        skipped: list[str] = []
        assets = 0
        for project_id in sorted(await self._documents.list_keys()):
            doc = await self._documents.load(project_id)
            if doc is None:
                skipped.append(project_id)
                continue
            assets += await self._write_project(doc, written)
            projects.append(project_id)
        pools = await self._index.global_pools()
        await _write_text(self.root / GLOBAL_POOLS_FILE, json.dumps(pools, ensure_ascii=False, indent=2))
        logger.info("mirrored %d project(s) and %d asset(s) to %s", len(projects), assets, self.root)
        return {"projects": projects, "assets": assets, "skipped": skipped}

    async def restore(self) -> dict[str, Any]:
        await self.directory.ensure_permission()
        restored: list[str] = []
        kept_local: list[str] = []
        skipped: list[str] = []
        mirrored_docs: list[ProjectDocument] = []
        projects_dir = self.root / PROJECTS_DIR
        files = sorted(projects_dir.glob("project-*.json")) if projects_dir.is_dir() else []
        for path in files:
            try:
                doc = parse_project_file(await _read_json(path))
            except (OSError, json.JSONDecodeError, ValidationError, ModelValidationError, ValueError) as exc:
                logger.warning("skipping unreadable mirror file %s: %s", path.name, exc)
                skipped.append(path.name)
                continue
            mirrored_docs.append(doc)
            local = await self._documents.load(doc.id)
            if local is not None and local.last_modified >= doc.last_modified:
                kept_local.append(doc.id)
                continue
            await self._documents.save(doc)
            restored.append(doc.id)

        key_map = asset_key_map(mirrored_docs)
        assets_restored = 0
        assets_kept = 0
        for blob_type in BLOB_TYPES:
            type_dir = self.root / ASSETS_DIR / blob_type
            if not type_dir.is_dir():
                continue
            for path in sorted(type_dir.iterdir()):
                if not path.is_file() or path.name.startswith("."):
                    continue
                key = key_map.get((blob_type, asset_stem(path.name)), asset_stem(path.name))
                if await self._blobs.exists(make_handle(blob_type, key)):
                    assets_kept += 1
                    continue
                await self._blobs.put(blob_type, key, await _read_bytes(path), content_type_for(path.name))
                assets_restored += 1

        pools_path = self.root / GLOBAL_POOLS_FILE
        if pools_path.is_file():
            try:
                pools = await _read_json(pools_path)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("skipping unreadable %s: %s", GLOBAL_POOLS_FILE, exc)
                pools = None
            if isinstance(pools, dict) and pools:
                await self._index.merge_global_pools(pools)

        if self._migrator is not None:
            for project_id in restored:
                doc = await self._documents.load(project_id)
                if doc is not None:
                    await self._migrator.migrate(doc)

        indexed = await rebuild_index(self._documents, self._index)
        logger.info(
            "restored %d project(s) and %d asset(s) from %s, kept %d newer local project(s)",
            len(restored),
            assets_restored,
            self.root,
            len(kept_local),
        )
        return {
            "restored": restored,
            "kept_local": kept_local,
            "skipped": skipped,
            "assets_restored": assets_restored,
            "assets_kept": assets_kept,
            "indexed": indexed,
        }


async def rebuild_index(documents: Any, index: Any) -> int:
    entries: list[MetadataEntry] = []
    for project_id in sorted(await documents.list_keys()):
        doc = await documents.load(project_id)
        if doc is not None:
            entries.append(MetadataEntry.from_document(doc))
    if entries:
        await index.upsert_many(entries)
    return len(entries)
