from __future__ import annotations

import asyncio
import base64

from episode_store.kv_backends import InMemoryKeyValueStore
from episode_store.migration import JitMigrator
from episode_store.repositories import BlobStore, DocumentStore
from episode_store.schemas import ProjectDocument


class CountingBlobStore(BlobStore):
    def __init__(self, kv) -> None:
        super().__init__(kv)
        self.puts = 0

    async def put(self, blob_type, key, payload, content_type=None):
        self.puts += 1
        return await super().put(blob_type, key, payload, content_type)


def _literal(payload: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"


def _setup(threshold: int = 1024, budget_ms: int = 30000, clock=None):
    kv = InMemoryKeyValueStore()
    blobs = CountingBlobStore(kv)
    documents = DocumentStore(kv)
    kwargs = {"clock": clock} if clock is not None else {}
    migrator = JitMigrator(blobs=blobs, documents=documents, threshold_bytes=threshold, budget_ms=budget_ms, **kwargs)
    return kv, blobs, documents, migrator


def test_two_megabyte_literal_becomes_handle_resolving_byte_for_byte():
    payload = bytes(range(256)) * 8192

    async def scenario():
        kv, blobs, documents, migrator = _setup(threshold=50 * 1024)
        await documents.save_raw({"id": "p1", "version": 7, "script": [{"id": 1, "finalImageUrl": _literal(payload)}]})
        doc = await documents.load("p1")
        report = await migrator.migrate(doc)
        assert report.migrated == ["cut:1:final"]
        assert report.saved is True
        assert doc.script[0].final_image_url == "blob://images/p1-cut-1-final"
        assert await blobs.get(doc.script[0].final_image_url) == payload
        stored = await documents.load_raw("p1")
        assert stored["script"][0]["finalImageUrl"] == "blob://images/p1-cut-1-final"

    assert len(payload) == 2 * 1024 * 1024
    asyncio.run(scenario())


def test_migration_is_idempotent_with_zero_puts_on_second_pass():
    async def scenario():
        kv, blobs, documents, migrator = _setup()
        doc = ProjectDocument.model_validate(
            {
                "id": "p1",
                "script": [{"id": 1, "audioUrl": _literal(b"a" * 4096, "audio/mpeg")}],
                "assetDefinitions": {"hero": {"id": "hero", "masterImage": _literal(b"m" * 4096)}},
                "thumbnailUrl": _literal(b"t" * 4096),
            }
        )
        first = await migrator.migrate(doc)
        assert blobs.puts == 3
        assert sorted(first.migrated) == ["asset:hero:master", "cut:1:audio", "thumbnail:main:image"]
        snapshot = doc.to_wire()
        writes_before = len(await kv.keys("project-"))

        second = await migrator.migrate(doc)
        assert blobs.puts == 3
        assert second.changed is False
        assert second.saved is False
        assert doc.to_wire() == snapshot
        assert len(await kv.keys("project-")) == writes_before

    asyncio.run(scenario())


def test_small_literals_and_handles_are_left_alone():
    async def scenario():
        _, blobs, documents, migrator = _setup()
        small = _literal(b"tiny")
        doc = ProjectDocument.model_validate(
            {"id": "p1", "script": [{"id": 1, "finalImageUrl": small, "draftImageUrl": "blob://images/p1-cut-1-draft"}]}
        )
        report = await migrator.migrate(doc)
        assert report.changed is False
        assert blobs.puts == 0
        assert doc.script[0].final_image_url == small
        assert await documents.load("p1") is None

    asyncio.run(scenario())


def test_budget_overrun_strips_remaining_literals_and_persists():
    ticks = [0.0]

    def clock() -> float:
        ticks[0] += 10.0
        return ticks[0]

    async def scenario():
        _, blobs, documents, migrator = _setup(budget_ms=15000, clock=clock)
        doc = ProjectDocument.model_validate(
            {"id": "p1", "script": [{"id": n, "finalImageUrl": _literal(bytes([n]) * 4096)} for n in (1, 2, 3)]}
        )
        report = await migrator.migrate(doc)
        assert report.budget_exceeded is True
        assert report.migrated == ["cut:1:final"]
        assert report.stripped == ["cut:2:final", "cut:3:final"]
        assert blobs.puts == 1
        stored = await documents.load("p1")
        assert [cut.final_image_url for cut in stored.script] == ["blob://images/p1-cut-1-final", None, None]

    asyncio.run(scenario())


def test_undecodable_literal_is_stripped():
    async def scenario():
        _, blobs, _, migrator = _setup()
        doc = ProjectDocument.model_validate(
            {"id": "p1", "script": [{"id": 1, "videoUrl": "data:video/mp4;base64," + "!" * 4096}]}
        )
        report = await migrator.migrate(doc)
        assert report.stripped == ["cut:1:video"]
        assert doc.script[0].video_url is None
        assert blobs.puts == 0

    asyncio.run(scenario())


def test_migrate_all_walks_every_stored_project():
    async def scenario():
        _, _, documents, migrator = _setup()
        await documents.save_raw({"id": "a", "version": 7, "thumbnailUrl": _literal(b"a" * 4096)})
        await documents.save_raw({"id": "b", "version": 7})
        reports = await migrator.migrate_all()
        assert [(report.project_id, report.changed) for report in reports] == [("a", True), ("b", False)]
        assert (await documents.load("a")).thumbnail_url == "blob://images/a-thumbnail-main-image"

    asyncio.run(scenario())


def _inline_literals(value, path=""):
    if isinstance(value, str):
        return [path] if value.startswith("data:") and len(value) > 1024 else []
    if isinstance(value, dict):
        return [hit for key, item in value.items() for hit in _inline_literals(item, f"{path}.{key}")]
    if isinstance(value, list):
        return [hit for index, item in enumerate(value) for hit in _inline_literals(item, f"{path}.{index}")]
    return []


def test_no_large_literal_survives_anywhere_in_stored_document():
    big = _literal(b"f" * 200 * 1024)

    async def scenario():
        _, blobs, documents, migrator = _setup()
        await documents.save_raw(
            {
                "id": "p1",
                "version": 7,
                "thumbnailSettings": {"frameImage": big, "titleSize": 60},
                "thumbnailPreview": big,
                "chatHistory": [{"role": "user", "text": "look"}, {"role": "user", "image": big}],
                "visualAssets": {"v1": {"previewImageUrl": big}},
                "assets": {"3": {"imageUrl": big, "masterImage": big}},
                "characters": [{"name": "Ada", "portrait": _literal(b"c" * 4096, "image/jpeg")}],
                "notes": {"voiceMemo": _literal(b"v" * 4096, "audio/wav")},
            }
        )
        doc = await documents.load("p1")
        report = await migrator.migrate(doc)

        stored = await documents.load_raw("p1")
        assert _inline_literals(stored) == []
        assert stored["thumbnailSettings"] == {"frameImage": "blob://images/p1-thumbnail-frame-image", "titleSize": 60}
        assert stored["thumbnailPreview"] == "blob://images/p1-thumbnail-preview-image"
        assert stored["chatHistory"][1]["image"] == "blob://images/p1-chat-1-image"
        assert stored["visualAssets"]["v1"]["previewImageUrl"] == "blob://images/p1-visual-v1-preview"
        assert stored["assets"]["3"] == {
            "imageUrl": "blob://assets/p1-production-3-final",
            "masterImage": "blob://assets/p1-production-3-master",
        }
        assert stored["characters"][0]["portrait"] == "blob://images/p1-field-characters.0.portrait-data"
        assert stored["notes"]["voiceMemo"] == "blob://audio/p1-field-notes.voiceMemo-data"
        assert len(report.migrated) == 8
        assert await blobs.get(stored["chatHistory"][1]["image"]) == b"f" * 200 * 1024

        again = await migrator.migrate(await documents.load("p1"))
        assert again.changed is False
        assert blobs.puts == 8

    asyncio.run(scenario())
