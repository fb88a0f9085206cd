from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from episode_store.handles import BLOB_TYPES, BlobRef, encode_data_url, make_handle, parse_handle

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "media-"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def heal_content_type(blob_type: str, content_type: str | None, key: str = "") -> str:
    mime = (content_type or "").strip().lower()
    ext = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    if blob_type == "audio" and mime in {"", "application/octet-stream", "audio/mp3"}:
        return "audio/mpeg"
    if blob_type == "video" and mime in {"", "application/octet-stream"}:
        if ext in {"webm", "mkv"}:
            return "video/webm"
        if ext == "mov":
            return "video/quicktime"
        return "video/mp4"
    return mime or "application/octet-stream"


@dataclass(frozen=True)
class BlobRecord:
    handle: str
    blob_type: str
    key: str
    content_type: str
    size: int
    data: bytes


class BlobStore:
    """Binary payloads addressed by ``blob://{type}/{key}`` handles.

    Payload bytes live under ``media-{type}-{key}``; a small sidecar record
    (content type, size, creation time) lives next to it under the same key with
    a ``.meta`` suffix.
    """

    def __init__(self, kv: Any) -> None:
        self._kv = kv

    @staticmethod
    def storage_key(blob_type: str, key: str) -> str:
        return f"{STORAGE_PREFIX}{blob_type}-{key}"

    @staticmethod
    def _meta_key(storage_key: str) -> str:
        return f"{storage_key}.meta"

    async def put(self, blob_type: str, key: str, payload: bytes, content_type: str | None = None) -> str:
        if blob_type not in BLOB_TYPES:
            raise ValueError(f"unsupported blob type: {blob_type}")
        storage_key = self.storage_key(blob_type, key)
        await self._kv.set(storage_key, payload)
        await self._kv.set(
            self._meta_key(storage_key),
            {
                "contentType": heal_content_type(blob_type, content_type, key),
                "size": len(payload),
                "createdAt": _now_iso(),
            },
        )
        logger.debug("stored blob %s/%s (%d bytes)", blob_type, key, len(payload))
        return make_handle(blob_type, key)

    async def get(self, handle: str | None) -> bytes | None:
        ref = parse_handle(handle)
        if ref is None:
            return None
        data = await self._kv.get(self.storage_key(ref.blob_type, ref.key))
        if not isinstance(data, bytes):
            return None
        return data

    async def get_record(self, handle: str | None) -> BlobRecord | None:
        ref = parse_handle(handle)
        if ref is None:
            return None
        storage_key = self.storage_key(ref.blob_type, ref.key)
        data = await self._kv.get(storage_key)
        if not isinstance(data, bytes):
            return None
        meta = await self._kv.get(self._meta_key(storage_key))
        content_type = meta.get("contentType") if isinstance(meta, dict) else None
        return BlobRecord(
            handle=ref.handle,
            blob_type=ref.blob_type,
            key=ref.key,
            content_type=heal_content_type(ref.blob_type, content_type, ref.key),
            size=len(data),
            data=data,
        )

    async def exists(self, handle: str | None) -> bool:
        ref = parse_handle(handle)
        if ref is None:
            return False
        size = await self._kv.raw_size(self.storage_key(ref.blob_type, ref.key))
        return size is not None

    async def delete(self, handle: str | None) -> bool:
        ref = parse_handle(handle)
        if ref is None:
            return False
        storage_key = self.storage_key(ref.blob_type, ref.key)
        removed = await self._kv.delete(storage_key)
        await self._kv.delete(self._meta_key(storage_key))
        if removed:
            logger.debug("deleted blob %s/%s", ref.blob_type, ref.key)
        return removed

    async def to_data_url(self, handle: str | None) -> str | None:
        record = await self.get_record(handle)
        if record is None:
            return None
        return encode_data_url(record.data, record.content_type)

    async def list_refs(self, blob_type: str | None = None) -> list[BlobRef]:
        types = [blob_type] if blob_type else list(BLOB_TYPES)
        refs: list[BlobRef] = []
        for item_type in types:
            prefix = f"{STORAGE_PREFIX}{item_type}-"
            for storage_key in await self._kv.keys(prefix):
                if storage_key.endswith(".meta"):
                    continue
                refs.append(BlobRef(blob_type=item_type, key=storage_key[len(prefix) :]))
        return refs
