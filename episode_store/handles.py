from __future__ import annotations

import base64
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, unquote

from pydantic import BaseModel

from episode_store.schemas import ProjectDocument

HANDLE_SCHEME = "blob://"
BLOB_TYPES = ("images", "audio", "assets", "video")

_DATA_URL_RE = re.compile(r"^data:([^;,]*)((?:;[^;,]*)*);base64,", re.IGNORECASE)


def clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


@dataclass(frozen=True)
class BlobRef:
    blob_type: str
    key: str

    @property
    def handle(self) -> str:
        return make_handle(self.blob_type, self.key)


def make_handle(blob_type: str, key: str) -> str:
    if blob_type not in BLOB_TYPES:
        raise ValueError(f"unsupported blob type: {blob_type}")
    return f"{HANDLE_SCHEME}{blob_type}/{quote(key, safe='-._~')}"


def is_handle(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(HANDLE_SCHEME)


def parse_handle(value: Any) -> BlobRef | None:
    if not is_handle(value):
        return None
    raw = value[len(HANDLE_SCHEME) :].split("?", 1)[0]
    blob_type, sep, key = raw.partition("/")
    if not sep or not key or blob_type not in BLOB_TYPES:
        return None
    return BlobRef(blob_type=blob_type, key=unquote(key))


def is_inline_literal(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("data:") and _DATA_URL_RE.match(value[:512]) is not None


def decode_inline_literal(value: str) -> tuple[bytes, str]:
    """Return ``(payload, content_type)`` for a base64 data URL.

    Raises ``ValueError`` when the literal is not valid base64.
    """
    match = _DATA_URL_RE.match(value[:512])
    if match is None:
        raise ValueError("not a base64 data url")
    content_type = match.group(1).strip().lower() or "application/octet-stream"
    payload = base64.b64decode(value[match.end() :], validate=True)
    return payload, content_type


def encode_data_url(payload: bytes, content_type: str) -> str:
    return f"data:{content_type or 'application/octet-stream'};base64,{base64.b64encode(payload).decode('ascii')}"


def blob_key(project_id: str, kind: str, item_id: str | int, role: str) -> str:
    return f"{project_id}-{kind}-{item_id}-{role}"


@dataclass
class BinarySlot:
    """One field of a document that may hold an inline literal or a blob handle.

    ``owner`` is a pydantic model (``attr`` is the attribute name) or a plain
    dict/list from the document's free-form payload (``attr`` is the key or index).
    """

    owner: Any
    attr: Any
    blob_type: str
    kind: str
    item_id: str
    role: str

    def get(self) -> Any:
        if isinstance(self.owner, dict):
            return self.owner.get(self.attr)
        if isinstance(self.owner, list):
            return self.owner[self.attr]
        return getattr(self.owner, self.attr, None)

    def set(self, value: Any) -> None:
        if isinstance(self.owner, (dict, list)):
            self.owner[self.attr] = value
        else:
            setattr(self.owner, self.attr, value)

    def key_for(self, project_id: str) -> str:
        return blob_key(project_id, self.kind, self.item_id, self.role)

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.item_id}:{self.role}"


# Leading segment of every key derived by ``blob_key`` after the project id.
KEY_KINDS = ("cut", "asset", "style", "thumbnail", "chat", "visual", "production", "field")

_CUT_SLOTS = (
    ("final_image_url", "images", "final"),
    ("draft_image_url", "images", "draft"),
    ("audio_url", "audio", "audio"),
    ("sfx_url", "audio", "sfx"),
    ("video_url", "video", "video"),
)
_ASSET_SLOTS = (
    ("reference_image", "ref"),
    ("master_image", "master"),
    ("draft_image", "draft"),
)
_PRODUCTION_SLOTS = (
    ("masterImage", "master"),
    ("draftImage", "draft"),
    ("referenceImage", "ref"),
    ("imageUrl", "final"),
)


def _dict_items(value: Any) -> list[tuple[str, dict[str, Any]]]:
    if not isinstance(value, dict):
        return []
    return [(str(key), item) for key, item in value.items() if isinstance(item, dict)]


def _named_slots(doc: ProjectDocument) -> Iterator[BinarySlot]:
    for cut in doc.script:
        for attr, blob_type, role in _CUT_SLOTS:
            yield BinarySlot(cut, attr, blob_type, "cut", str(cut.id), role)
    for asset_id, asset in doc.asset_definitions.items():
        for attr, role in _ASSET_SLOTS:
            yield BinarySlot(asset, attr, "assets", "asset", str(asset_id), role)
    yield BinarySlot(doc.master_style, "reference_image", "images", "style", "master", "reference")
    yield BinarySlot(doc.style_anchor, "reference_image", "images", "style", "anchor", "reference")
    yield BinarySlot(doc, "thumbnail_url", "images", "thumbnail", "main", "image")
    yield BinarySlot(doc.thumbnail_settings, "frame_image", "images", "thumbnail", "frame", "image")

    extras = doc.model_extra
    if not extras:
        return
    if "thumbnailPreview" in extras:
        yield BinarySlot(extras, "thumbnailPreview", "images", "thumbnail", "preview", "image")
    chat = extras.get("chatHistory")
    if isinstance(chat, list):
        for index, message in enumerate(chat):
            if isinstance(message, dict) and "image" in message:
                yield BinarySlot(message, "image", "images", "chat", str(index), "image")
    for asset_id, asset in _dict_items(extras.get("visualAssets")):
        if "previewImageUrl" in asset:
            yield BinarySlot(asset, "previewImageUrl", "images", "visual", asset_id, "preview")
    for cut_id, asset in _dict_items(extras.get("assets")):
        for attr, role in _PRODUCTION_SLOTS:
            if attr in asset:
                yield BinarySlot(asset, attr, "assets", "production", cut_id, role)


def _blob_type_for(value: str) -> str:
    ref = parse_handle(value)
    if ref is not None:
        return ref.blob_type
    mime = value[5:].split(";", 1)[0].split(",", 1)[0].strip().lower()
    for prefix, blob_type in (("image/", "images"), ("audio/", "audio"), ("video/", "video")):
        if mime.startswith(prefix):
            return blob_type
    return "assets"


def _walk(node: Any, path: tuple[str, ...]) -> Iterator[tuple[Any, Any, tuple[str, ...]]]:
    if isinstance(node, BaseModel):
        for name, info in type(node).model_fields.items():
            yield from _visit(node, name, getattr(node, name, None), path + (info.alias or name,))
        extras = node.model_extra
        if extras:
            for key, value in list(extras.items()):
                yield from _visit(extras, key, value, path + (str(key),))
    elif isinstance(node, dict):
        for key, value in list(node.items()):
            yield from _visit(node, key, value, path + (str(key),))
    elif isinstance(node, list):
        for index, value in enumerate(node):
            yield from _visit(node, index, value, path + (str(index),))


def _visit(owner: Any, attr: Any, value: Any, path: tuple[str, ...]) -> Iterator[tuple[Any, Any, tuple[str, ...]]]:
    if isinstance(value, str):
        if is_handle(value) or is_inline_literal(value):
            yield owner, attr, path
    elif isinstance(value, (BaseModel, dict, list)):
        yield from _walk(value, path)


def iter_binary_slots(doc: ProjectDocument) -> Iterator[BinarySlot]:
    """Every binary-bearing field of ``doc``.

    Known fields get their fixed keys first; any other string anywhere in the
    document that holds a handle or an inline literal is keyed by its path.
    """
    covered: set[tuple[int, Any]] = set()
    for slot in _named_slots(doc):
        covered.add((id(slot.owner), slot.attr))
        yield slot
    for owner, attr, path in list(_walk(doc, ())):
        if (id(owner), attr) in covered:
            continue
        value = owner[attr] if isinstance(owner, (dict, list)) else getattr(owner, attr, None)
        if not isinstance(value, str):
            continue
        yield BinarySlot(owner, attr, _blob_type_for(value), "field", clean_segment(".".join(path)), "data")


def iter_blob_refs(doc: ProjectDocument) -> Iterator[tuple[BinarySlot, BlobRef]]:
    for slot in iter_binary_slots(doc):
        ref = parse_handle(slot.get())
        if ref is not None:
            yield slot, ref


def owned_by(ref: BlobRef, project_id: str) -> bool:
    """True when ``ref.key`` was derived for ``project_id`` by ``blob_key``."""
    prefix = f"{project_id}-"
    if not ref.key.startswith(prefix):
        return False
    kind = ref.key[len(prefix) :].partition("-")[0]
    return kind in KEY_KINDS
