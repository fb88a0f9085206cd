from __future__ import annotations

import asyncio
import json
from pathlib import Path

from episode_store.errors import ApiError, MirrorPermissionError
from episode_store.mirror import MirrorDirectory, MirrorPermission
from episode_store.persister import SaveOutcome


async def _seed(engine):
    doc = await engine.create_project()
    final = await engine.blobs.put("images", f"{doc.id}-cut-1-final", b"final-png", "image/png")
    audio = await engine.blobs.put("audio", f"{doc.id}-cut-1-audio", b"mp3-bytes", "audio/mpeg")
    ticket = engine.update_project(
        {
            "episodeName": "Pilot",
            "script": [
                {"id": 1, "finalImageUrl": final, "audioUrl": audio},
                {"id": 2, "draftImageUrl": final},
            ],
        }
    )
    assert await ticket.landed() is SaveOutcome.COMMITTED
    await engine.index.merge_global_pools({"ideas": [{"title": "Sandstorm"}]})
    return engine.active


def test_sync_all_writes_mirror_layout(make_engine, tmp_path: Path):
    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            doc = await _seed(engine)
            await engine.documents.save_raw({"id": "orphan", "version": 7})
            engine.attach_mirror(str(tmp_path / "mirror"))
            summary = await engine.sync_mirror_all()
            assert summary["projects"] == sorted([doc.id, "orphan"])
            assert summary["assets"] == 2
            root = tmp_path / "mirror"
            project_file = json.loads((root / "projects" / f"project-{doc.id}.json").read_text(encoding="utf-8"))
            assert project_file["episodeName"] == "Pilot"
            assert (root / "projects" / "project-orphan.json").exists()
            assert (root / "assets" / "images" / f"{doc.id}-cut-1-final.png").read_bytes() == b"final-png"
            assert (root / "assets" / "audio" / f"{doc.id}-cut-1-audio.mp3").read_bytes() == b"mp3-bytes"
            pools = json.loads((root / "global-research.json").read_text(encoding="utf-8"))
            assert pools == {"ideas": [{"title": "Sandstorm"}]}
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_restore_rebuilds_store_blobs_and_index(make_engine, tmp_path: Path):
    mirror_dir = str(tmp_path / "mirror")

    async def scenario():
        source = make_engine()
        await source.open()
        try:
            doc = await _seed(source)
            source.attach_mirror(mirror_dir)
            await source.sync_mirror_all()
        finally:
            await source.close()

        target = make_engine()
        await target.open()
        try:
            target.attach_mirror(mirror_dir)
            result = await target.restore_from_mirror()
            assert result["restored"] == [doc.id]
            assert result["assets_restored"] == 2
            restored = await target.load_project(doc.id)
            assert restored.episode_name == "Pilot"
            assert await target.blobs.get(restored.script[0].final_image_url) == b"final-png"
            record = await target.blobs.get_record(restored.script[0].audio_url)
            assert record.content_type == "audio/mpeg"
            assert [entry.id for entry in await target.list_projects()] == [doc.id]
            assert (await target.index.global_pools())["ideas"] == [{"title": "Sandstorm"}]

            again = await target.restore_from_mirror()
            assert again["restored"] == []
            assert again["kept_local"] == [doc.id]
            assert again["assets_kept"] == 2
            assert (await target.index.global_pools())["ideas"] == [{"title": "Sandstorm"}]
        finally:
            await target.close()

    asyncio.run(scenario())


def test_restore_keeps_newer_local_copy(make_engine, tmp_path: Path):
    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            doc = await _seed(engine)
            engine.attach_mirror(str(tmp_path / "mirror"))
            await engine.sync_mirror_all()
            engine.detach_mirror()
            ticket = engine.update_project({"episodeName": "Pilot (recut)"})
            await ticket.landed()
            engine.attach_mirror(str(tmp_path / "mirror"))
            result = await engine.restore_from_mirror()
            assert doc.id in result["kept_local"]
            assert (await engine.documents.load(doc.id)).episode_name == "Pilot (recut)"
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_commit_mirrors_project_when_attached(make_engine, tmp_path: Path):
    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            doc = await engine.create_project()
            engine.attach_mirror(str(tmp_path / "mirror"))
            await engine.update_project({"episodeName": "Mirrored"}).landed()
            data = json.loads((tmp_path / "mirror" / "projects" / f"project-{doc.id}.json").read_text(encoding="utf-8"))
            assert data["episodeName"] == "Mirrored"
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_revoked_permission_skips_mirror_without_failing_commit(make_engine, tmp_path: Path):
    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            doc = await engine.create_project()
            directory = engine.attach_mirror(str(tmp_path / "mirror"))
            directory.revoke()
            assert directory.query_permission() is MirrorPermission.DENIED
            assert await engine.update_project({"episodeName": "Offline"}).landed() is SaveOutcome.COMMITTED
            assert not (tmp_path / "mirror" / "projects").exists()
            assert (await engine.documents.load(doc.id)).episode_name == "Offline"
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_permission_prompt_lifecycle(tmp_path: Path):
    answers = [False, True]

    async def prompt(path):
        return answers.pop(0)

    async def scenario():
        directory = MirrorDirectory(tmp_path / "mirror", prompt=prompt)
        assert directory.query_permission() is MirrorPermission.PROMPT
        try:
            await directory.ensure_permission()
        except MirrorPermissionError as exc:
            assert exc.http_status == 403
        else:
            raise AssertionError("expected MirrorPermissionError")
        assert await directory.request_permission() is MirrorPermission.GRANTED
        assert (tmp_path / "mirror").is_dir()
        (tmp_path / "mirror").rmdir()
        assert directory.query_permission() is MirrorPermission.PROMPT

    asyncio.run(scenario())


def test_mirror_operations_require_attached_directory(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            await engine.sync_mirror_all()
        except ApiError as exc:
            assert exc.code == "MIRROR_NOT_CONFIGURED"
        else:
            raise AssertionError("expected MIRROR_NOT_CONFIGURED")
        finally:
            await engine.close()

    asyncio.run(scenario())
