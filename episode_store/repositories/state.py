from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError

from episode_store.schemas import CURRENT_SCHEMA_VERSION, MetadataEntry

logger = logging.getLogger(__name__)


def _empty_wrapper() -> dict[str, Any]:
    return {"state": {"savedProjects": {}, "globalPools": {}}, "version": CURRENT_SCHEMA_VERSION}


class RootStateRepository:
    """The root ``{state, version}`` wrapper holding the index and cross-project pools.

    Writes go through a size-based safety net: when a large previous value is
    about to be replaced by a much smaller one, the previous value is copied to a
    timestamped backup key first.
    """

    def __init__(
        self,
        kv: Any,
        *,
        root_key: str = "episode-store-state",
        backup_min_previous_chars: int = 5000,
        backup_max_new_chars: int = 3000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self.root_key = root_key
        self._backup_min_previous_chars = backup_min_previous_chars
        self._backup_max_new_chars = backup_max_new_chars
        self._clock = clock

    async def read(self) -> dict[str, Any]:
        value = await self._kv.get(self.root_key)
        if isinstance(value, str):
            # Older builds persisted the wrapper as a JSON string.
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("root state %s is not valid JSON, starting empty", self.root_key)
                return _empty_wrapper()
        if not isinstance(value, dict):
            return _empty_wrapper()
        state = value.get("state") if isinstance(value.get("state"), dict) else value
        state.setdefault("savedProjects", {})
        state.setdefault("globalPools", {})
        version = value.get("version")
        return {"state": state, "version": version if isinstance(version, int) else CURRENT_SCHEMA_VERSION}

    async def write(self, wrapper: dict[str, Any]) -> str | None:
        new_value = json.dumps(wrapper, ensure_ascii=False, separators=(",", ":"))
        backup_key = None
        previous = await self._kv.get(self.root_key)
        if previous is not None:
            previous_str = previous if isinstance(previous, str) else json.dumps(previous, ensure_ascii=False)
            if len(previous_str) > self._backup_min_previous_chars and len(new_value) < self._backup_max_new_chars:
                backup_key = f"{self.root_key}-backup-{int(self._clock() * 1000)}"
                logger.warning("possible state wipe detected, backing up previous root state to %s", backup_key)
                await self._kv.set(backup_key, previous_str)
        await self._kv.set(self.root_key, wrapper)
        return backup_key

    async def list_backups(self) -> list[str]:
        return await self._kv.keys(f"{self.root_key}-backup-")


class MetadataIndex:
    """Cached projection of ``savedProjects`` from the root state.

    The cache is a best-effort view: every mutation re-reads the root wrapper so
    entries written by sibling processes are not clobbered.
    """

    def __init__(self, state: RootStateRepository) -> None:
        self._state = state
        self._entries: dict[str, MetadataEntry] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _parse_entries(raw: Any) -> dict[str, MetadataEntry]:
        entries: dict[str, MetadataEntry] = {}
        if not isinstance(raw, dict):
            return entries
        for project_id, item in raw.items():
            if not isinstance(item, dict):
                continue
            try:
                entries[str(project_id)] = MetadataEntry.model_validate({"id": project_id, **item})
            except ValidationError:
                logger.warning("dropping unreadable index entry %s", project_id)
        return entries

    def entries(self) -> dict[str, MetadataEntry]:
        return dict(self._entries)

    def get(self, project_id: str) -> MetadataEntry | None:
        return self._entries.get(project_id)

    async def refresh(self) -> dict[str, MetadataEntry]:
        wrapper = await self._state.read()
        self._entries = self._parse_entries(wrapper["state"].get("savedProjects"))
        return self.entries()

    async def _mutate(self, fn: Callable[[dict[str, Any]], None]) -> None:
        async with self._lock:
            wrapper = await self._state.read()
            fn(wrapper["state"])
            wrapper["version"] = CURRENT_SCHEMA_VERSION
            await self._state.write(wrapper)
            self._entries = self._parse_entries(wrapper["state"].get("savedProjects"))

    async def upsert(self, entry: MetadataEntry) -> None:
        def _apply(state: dict[str, Any]) -> None:
            state["savedProjects"][entry.id] = entry.to_wire()

        await self._mutate(_apply)

    async def drop(self, project_id: str) -> None:
        def _apply(state: dict[str, Any]) -> None:
            state["savedProjects"].pop(project_id, None)

        await self._mutate(_apply)

    async def upsert_many(self, entries: Iterable[MetadataEntry]) -> None:
        items = list(entries)

        def _apply(state: dict[str, Any]) -> None:
            for entry in items:
                state["savedProjects"][entry.id] = entry.to_wire()

        await self._mutate(_apply)

    async def global_pools(self) -> dict[str, Any]:
        wrapper = await self._state.read()
        pools = wrapper["state"].get("globalPools")
        return pools if isinstance(pools, dict) else {}

    async def merge_global_pools(self, pools: dict[str, Any]) -> None:
        def _apply(state: dict[str, Any]) -> None:
            current = state.get("globalPools") if isinstance(state.get("globalPools"), dict) else {}
            for name, value in pools.items():
                existing = current.get(name)
                if isinstance(existing, list) and isinstance(value, list):
                    seen = {json.dumps(item, sort_keys=True) for item in existing}
                    current[name] = existing + [item for item in value if json.dumps(item, sort_keys=True) not in seen]
                elif existing in (None, "", [], {}):
                    current[name] = value
            state["globalPools"] = current

        await self._mutate(_apply)
