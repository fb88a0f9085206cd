"""Per-version upgrades for persisted project documents.

Each entry upgrades a raw (wire-format) document from ``version`` to
``version + 1``. Documents written before versioning carry no ``version`` field
and are treated as version 5, the oldest layout still found in the wild.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from episode_store.schemas import CURRENT_SCHEMA_VERSION

logger = logging.getLogger(__name__)

LEGACY_SCHEMA_VERSION = 5

Upgrade = Callable[[dict[str, Any]], dict[str, Any]]


def _v5_to_v6(raw: dict[str, Any]) -> dict[str, Any]:
    # v5 stored asset definitions as a list and allowed a bare string style.
    defs = raw.get("assetDefinitions")
    if isinstance(defs, list):
        raw["assetDefinitions"] = {
            str(item["id"]): item for item in defs if isinstance(item, dict) and item.get("id") is not None
        }
    elif not isinstance(defs, dict):
        raw["assetDefinitions"] = {}
    style = raw.get("masterStyle")
    if isinstance(style, str):
        raw["masterStyle"] = {"description": style, "referenceImage": None}
    return raw


def _v6_to_v7(raw: dict[str, Any]) -> dict[str, Any]:
    # Cuts without an id get one past the current maximum; identity must never be positional.
    script = raw.get("script")
    if not isinstance(script, list):
        raw["script"] = []
        return raw
    numeric_ids = [cut["id"] for cut in script if isinstance(cut, dict) and isinstance(cut.get("id"), int)]
    next_id = max(numeric_ids, default=0) + 1
    for cut in script:
        if isinstance(cut, dict) and cut.get("id") in (None, ""):
            cut["id"] = next_id
            next_id += 1
    settings = raw.get("thumbnailSettings")
    if not isinstance(settings, dict):
        raw["thumbnailSettings"] = {"frameImage": ""}
    elif "frameImage" not in settings:
        settings["frameImage"] = ""
    return raw


UPGRADES: dict[int, Upgrade] = {
    5: _v5_to_v6,
    6: _v6_to_v7,
}


def upgrade_document(raw: dict[str, Any]) -> dict[str, Any]:
    """Bring a raw document up to ``CURRENT_SCHEMA_VERSION`` in place."""
    version = raw.get("version")
    if not isinstance(version, int):
        version = LEGACY_SCHEMA_VERSION
    if version > CURRENT_SCHEMA_VERSION:
        raise ValueError(f"document {raw.get('id')} has unsupported schema version {version}")
    while version < CURRENT_SCHEMA_VERSION:
        upgrade = UPGRADES.get(version)
        if upgrade is None:
            raise ValueError(f"no upgrade registered from schema version {version}")
        raw = upgrade(raw)
        version += 1
        logger.info("upgraded document %s to schema version %s", raw.get("id"), version)
    raw["version"] = CURRENT_SCHEMA_VERSION
    return raw
