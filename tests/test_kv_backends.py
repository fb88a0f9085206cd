from __future__ import annotations

import asyncio
from pathlib import Path

from episode_store.errors import StoreUnavailableError
from episode_store.kv_backends import (
    InMemoryKeyValueStore,
    SqliteKeyValueStore,
    create_kv_store,
    create_kv_store_from_env,
)


def test_memory_store_hands_out_copies():
    async def scenario():
        kv = InMemoryKeyValueStore()
        await kv.set("project-a", {"id": "a", "script": [{"id": 1}]})
        first = await kv.get("project-a")
        first["script"].append({"id": 2})
        second = await kv.get("project-a")
        assert second == {"id": "a", "script": [{"id": 1}]}

    asyncio.run(scenario())


def test_memory_store_keeps_bytes_and_lists_by_prefix():
    async def scenario():
        kv = InMemoryKeyValueStore()
        await kv.set("media-images-a-cut-1-final", b"\x89PNG")
        await kv.set("project-a", {"id": "a"})
        await kv.set("project-b", {"id": "b"})
        assert await kv.get("media-images-a-cut-1-final") == b"\x89PNG"
        assert await kv.keys("project-") == ["project-a", "project-b"]
        assert await kv.raw_size("media-images-a-cut-1-final") == 4
        assert await kv.delete("project-a") is True
        assert await kv.delete("project-a") is False
        assert await kv.get("project-a") is None

    asyncio.run(scenario())


def test_sqlite_store_persists_between_instances(tmp_path: Path):
    db_path = tmp_path / "kv.sqlite3"

    async def write():
        kv = SqliteKeyValueStore(db_path)
        await kv.open()
        await kv.set("project-a", {"id": "a", "episodeName": "Pilot"})
        await kv.set("media-audio-a-cut-1-audio", b"ID3")
        await kv.set("project-a", {"id": "a", "episodeName": "Pilot v2"})
        await kv.close()

    async def read():
        kv = SqliteKeyValueStore(db_path)
        await kv.open()
        try:
            assert await kv.get("project-a") == {"id": "a", "episodeName": "Pilot v2"}
            assert await kv.get("media-audio-a-cut-1-audio") == b"ID3"
            assert await kv.keys("project-") == ["project-a"]
        finally:
            await kv.close()

    asyncio.run(write())
    asyncio.run(read())


def test_sqlite_prefix_scan_treats_wildcards_literally(tmp_path: Path):
    async def scenario():
        kv = SqliteKeyValueStore(tmp_path / "kv.sqlite3")
        await kv.open()
        try:
            await kv.set("project_x", {"id": "x"})
            await kv.set("project-y", {"id": "y"})
            await kv.set("projectsz", {"id": "z"})
            assert await kv.keys("project_") == ["project_x"]
            assert await kv.keys("project-") == ["project-y"]
        finally:
            await kv.close()

    asyncio.run(scenario())


def test_sqlite_store_wraps_driver_errors(tmp_path: Path):
    async def scenario():
        kv = SqliteKeyValueStore(tmp_path / "kv.sqlite3")
        await kv.open()
        await kv._conn.execute("DROP TABLE kv_items")
        try:
            await kv.set("project-a", {"id": "a"})
        except StoreUnavailableError as exc:
            assert exc.code == "STORE_UNAVAILABLE"
            assert exc.retryable is True
        else:
            raise AssertionError("expected StoreUnavailableError")
        finally:
            await kv.close()

    asyncio.run(scenario())


def test_store_factory_defaults_to_memory():
    assert isinstance(create_kv_store_from_env({}), InMemoryKeyValueStore)


def test_store_factory_builds_sqlite_from_env(tmp_path: Path):
    env = {"EPS_STORE_BACKEND": "sqlite", "EPS_STORE_SQLITE_PATH": str(tmp_path / "x" / "kv.sqlite3")}
    kv = create_kv_store_from_env(env)
    assert isinstance(kv, SqliteKeyValueStore)
    assert (tmp_path / "x").is_dir()


def test_store_factory_rejects_unsupported_backend():
    try:
        create_kv_store("indexeddb")
    except RuntimeError as exc:
        assert "unsupported store backend" in str(exc)
    else:
        raise AssertionError("expected RuntimeError for unsupported store backend")
