from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from episode_store.errors import StoreUnavailableError


def _encode(value: Any) -> tuple[str, bytes | str]:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "bytes", bytes(value)
    return "json", json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _decode(kind: str, raw: bytes | str) -> Any:
    if kind == "bytes":
        return bytes(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


class InMemoryKeyValueStore:
    """Process-local key/value backend.

    Values are kept serialized so every read hands out a fresh copy, the way a
    structured-clone store behaves. Each operation yields to the event loop once.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._items: dict[str, tuple[str, bytes | str]] = {}

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(0)
        item = self._items.get(key)
        if item is None:
            return None
        return _decode(*item)

    async def set(self, key: str, value: Any) -> None:
        encoded = _encode(value)
        await asyncio.sleep(0)
        self._items[key] = encoded

    async def delete(self, key: str) -> bool:
        await asyncio.sleep(0)
        return self._items.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> list[str]:
        await asyncio.sleep(0)
        return sorted(k for k in self._items if k.startswith(prefix))

    async def raw_size(self, key: str) -> int | None:
        await asyncio.sleep(0)
        item = self._items.get(key)
        if item is None:
            return None
        return len(item[1])

    def reset(self) -> None:
        self._items.clear()


def _import_aiosqlite() -> Any:
    try:
        import aiosqlite  # type: ignore
    except ImportError as exc:
        raise RuntimeError("aiosqlite is required for EPS_STORE_BACKEND=sqlite; install aiosqlite") from exc
    return aiosqlite


class SqliteKeyValueStore:
    """SQLite-backed key/value store shared by every process on the machine."""

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._aiosqlite = _import_aiosqlite()
        self._conn: Any = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        if self._conn is not None:
            return
        conn = await self._aiosqlite.connect(str(self._db_path))
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_items (
                key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                value BLOB NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        await conn.commit()
        self._conn = conn

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    async def _connection(self) -> Any:
        if self._conn is None:
            await self.open()
        return self._conn

    async def get(self, key: str) -> Any | None:
        try:
            conn = await self._connection()
            async with conn.execute("SELECT kind, value FROM kv_items WHERE key = ?", (key,)) as cur:
                row = await cur.fetchone()
        except self._aiosqlite.Error as exc:
            raise StoreUnavailableError(f"sqlite read failed for {key}: {exc}") from exc
        if row is None:
            return None
        return _decode(row[0], row[1])

    async def set(self, key: str, value: Any) -> None:
        kind, raw = _encode(value)
        try:
            conn = await self._connection()
            async with self._lock:
                await conn.execute(
                    """
                    INSERT INTO kv_items(key, kind, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        kind = excluded.kind,
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, kind, raw, datetime.now(UTC).isoformat()),
                )
                await conn.commit()
        except self._aiosqlite.Error as exc:
            raise StoreUnavailableError(f"sqlite write failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> bool:
        try:
            conn = await self._connection()
            async with self._lock:
                cur = await conn.execute("DELETE FROM kv_items WHERE key = ?", (key,))
                await conn.commit()
        except self._aiosqlite.Error as exc:
            raise StoreUnavailableError(f"sqlite delete failed for {key}: {exc}") from exc
        return cur.rowcount > 0

    async def keys(self, prefix: str = "") -> list[str]:
        conn = await self._connection()
        pattern = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        async with conn.execute(
            "SELECT key FROM kv_items WHERE key LIKE ? ESCAPE '\\' ORDER BY key ASC",
            (pattern,),
        ) as cur:
            rows = await cur.fetchall()
        return [str(row[0]) for row in rows]

    async def raw_size(self, key: str) -> int | None:
        conn = await self._connection()
        async with conn.execute("SELECT length(value) FROM kv_items WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return int(row[0])


def create_kv_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryKeyValueStore | SqliteKeyValueStore:
    from episode_store.settings import EngineSettings

    settings = EngineSettings.from_env(environ)
    return create_kv_store(settings.store_backend, sqlite_path=settings.sqlite_path)


def create_kv_store(backend: str, *, sqlite_path: str = "") -> InMemoryKeyValueStore | SqliteKeyValueStore:
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "sqlite":
        return SqliteKeyValueStore(sqlite_path or ".runtime/episode_store.sqlite3")
    raise RuntimeError(f"unsupported store backend: {backend}")
