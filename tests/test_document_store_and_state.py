from __future__ import annotations

import asyncio
import json

from episode_store.kv_backends import InMemoryKeyValueStore
from episode_store.repositories import DocumentStore, MetadataIndex, RootStateRepository
from episode_store.schemas import CURRENT_SCHEMA_VERSION, MetadataEntry, ProjectDocument


def _doc(project_id: str, **fields) -> ProjectDocument:
    return ProjectDocument.model_validate({"id": project_id, **fields})


def test_list_keys_scans_storage_without_the_index():
    async def scenario():
        kv = InMemoryKeyValueStore()
        documents = DocumentStore(kv)
        await documents.save(_doc("a"))
        await kv.set("project-orphan", {"id": "orphan", "version": 7})
        await kv.set("media-images-a-cut-1-final", b"x")
        assert await documents.list_keys() == {"a", "orphan"}
        assert await documents.exists("orphan") is True
        assert await documents.remove("orphan") is True
        assert await documents.list_keys() == {"a"}

    asyncio.run(scenario())


def test_load_upgrades_legacy_documents_and_keeps_unknown_fields():
    async def scenario():
        kv = InMemoryKeyValueStore()
        await kv.set(
            "project-old",
            {
                "id": "old",
                "seriesName": "Dune Walkers",
                "assetDefinitions": [{"id": "hero", "name": "Hero"}],
                "masterStyle": "sand and dusk",
                "script": [{"id": 3}, {"text": "no id"}],
                "aspectRatio": "9:16",
            },
        )
        doc = await DocumentStore(kv).load("old")
        assert doc is not None
        assert doc.version == CURRENT_SCHEMA_VERSION
        assert list(doc.asset_definitions) == ["hero"]
        assert doc.master_style.description == "sand and dusk"
        assert [cut.id for cut in doc.script] == [3, 4]
        assert doc.to_wire()["aspectRatio"] == "9:16"

    asyncio.run(scenario())


def test_load_returns_none_for_missing_or_unreadable_documents():
    async def scenario():
        kv = InMemoryKeyValueStore()
        documents = DocumentStore(kv)
        assert await documents.load("missing") is None
        await kv.set("project-future", {"id": "future", "version": CURRENT_SCHEMA_VERSION + 1})
        assert await documents.load("future") is None

    asyncio.run(scenario())


def test_root_state_backs_up_large_value_before_small_overwrite():
    async def scenario():
        kv = InMemoryKeyValueStore()
        state = RootStateRepository(kv, clock=lambda: 1700000000.0)
        big = {"state": {"savedProjects": {f"p{i}": {"id": f"p{i}", "episodeName": "x" * 40} for i in range(200)}}}
        assert await state.write(big) is None
        backup_key = await state.write({"state": {"savedProjects": {}}, "version": 7})
        assert backup_key == "episode-store-state-backup-1700000000000"
        assert await state.list_backups() == [backup_key]
        backup = json.loads(await kv.get(backup_key))
        assert len(backup["state"]["savedProjects"]) == 200

    asyncio.run(scenario())


def test_root_state_skips_backup_for_small_changes():
    async def scenario():
        kv = InMemoryKeyValueStore()
        state = RootStateRepository(kv)
        await state.write({"state": {"savedProjects": {"a": {"id": "a"}}}, "version": 7})
        assert await state.write({"state": {"savedProjects": {}}, "version": 7}) is None
        assert await state.list_backups() == []

    asyncio.run(scenario())


def test_root_state_reads_legacy_json_string():
    async def scenario():
        kv = InMemoryKeyValueStore()
        legacy = json.dumps({"state": {"savedProjects": {"a": {"id": "a", "episodeName": "Pilot"}}}, "version": 6})
        await kv.set("episode-store-state", legacy)
        index = MetadataIndex(RootStateRepository(kv))
        entries = await index.refresh()
        assert entries["a"].episode_name == "Pilot"

    asyncio.run(scenario())


def test_index_mutations_reread_root_state():
    async def scenario():
        kv = InMemoryKeyValueStore()
        first = MetadataIndex(RootStateRepository(kv))
        second = MetadataIndex(RootStateRepository(kv))
        await first.upsert(MetadataEntry.from_document(_doc("a", episodeName="A")))
        await second.upsert(MetadataEntry.from_document(_doc("b", episodeName="B")))
        assert set(second.entries()) == {"a", "b"}
        await first.drop("a")
        assert set(await second.refresh()) == {"b"}
        wrapper = await kv.get("episode-store-state")
        assert wrapper["version"] == CURRENT_SCHEMA_VERSION

    asyncio.run(scenario())


def test_global_pools_merge_without_losing_entries():
    async def scenario():
        index = MetadataIndex(RootStateRepository(InMemoryKeyValueStore()))
        await index.merge_global_pools({"ideas": [{"title": "A"}], "notes": ""})
        await index.merge_global_pools({"ideas": [{"title": "A"}, {"title": "B"}], "notes": "keep"})
        pools = await index.global_pools()
        assert pools["ideas"] == [{"title": "A"}, {"title": "B"}]
        assert pools["notes"] == "keep"

    asyncio.run(scenario())
