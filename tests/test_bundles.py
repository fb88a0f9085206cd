from __future__ import annotations

import asyncio
import io
import json
import zipfile

from episode_store.bundles import IMPORTED_SUFFIX
from episode_store.errors import BundleFormatError


async def _seed(engine):
    doc = await engine.create_project()
    final = await engine.blobs.put("images", f"{doc.id}-cut-1-final", b"final-png", "image/png")
    await engine.update_project({"episodeName": "Pilot", "script": [{"id": 1, "finalImageUrl": final}]}).landed()
    return engine.active


def test_export_then_import_into_same_store_creates_renamed_copy(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            original = await _seed(engine)
            bundle = await engine.export_bundle([original.id])
            names = zipfile.ZipFile(io.BytesIO(bundle)).namelist()
            assert f"projects/project-{original.id}.json" in names
            assert f"assets/images/{original.id}-cut-1-final.png" in names

            report = await engine.import_bundle(bundle)
            assert len(report.imported) == 1
            new_id = report.renamed[original.id]
            assert report.imported == [new_id]
            imported = await engine.load_project(new_id)
            assert imported.episode_name == f"Pilot{IMPORTED_SUFFIX}"
            assert imported.script[0].final_image_url == f"blob://images/{new_id}-cut-1-final"
            assert await engine.blobs.get(imported.script[0].final_image_url) == b"final-png"

            untouched = await engine.documents.load(original.id)
            assert untouched.episode_name == "Pilot"
            assert {entry.id for entry in await engine.list_projects()} == {original.id, new_id}
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_import_into_fresh_store_keeps_ids(make_engine):
    async def scenario():
        source = make_engine()
        await source.open()
        try:
            original = await _seed(source)
            bundle = await source.export_bundle()
        finally:
            await source.close()

        target = make_engine()
        await target.open()
        try:
            report = await target.import_bundle(bundle)
            assert report.imported == [original.id]
            assert report.renamed == {}
            doc = await target.load_project(original.id)
            assert doc.episode_name == "Pilot"
            assert await target.blobs.get(doc.script[0].final_image_url) == b"final-png"
        finally:
            await target.close()

    asyncio.run(scenario())


def test_duplicate_ids_inside_one_bundle_are_rehomed(make_engine):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for folder in ("backup-a", "backup-b"):
            archive.writestr(
                f"{folder}/projects/project-shared.json",
                json.dumps(
                    {
                        "id": "shared",
                        "version": 7,
                        "episodeName": folder,
                        "thumbnailUrl": "blob://images/shared-thumbnail-main-image",
                    }
                ),
            )
        archive.writestr("backup-a/assets/images/shared-thumbnail-main-image.png", b"thumb")

    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            report = await engine.import_bundle(buffer.getvalue())
            assert len(report.imported) == 2
            assert "shared" in report.imported
            renamed_id = report.renamed["shared"]
            renamed = await engine.documents.load(renamed_id)
            assert renamed.episode_name.endswith(IMPORTED_SUFFIX)
            assert renamed.thumbnail_url == f"blob://images/{renamed_id}-thumbnail-main-image"
            assert await engine.blobs.get(renamed.thumbnail_url) == b"thumb"
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_import_migrates_inline_media_and_skips_invalid_files(make_engine):
    import base64

    literal = "data:image/png;base64," + base64.b64encode(b"p" * 4096).decode("ascii")
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("projects/project-inline.json", json.dumps({"id": "inline", "thumbnailUrl": literal}))
        archive.writestr("projects/project-broken.json", "{not json")
        archive.writestr("projects/project-noid.json", json.dumps({"episodeName": "no id"}))

    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            report = await engine.import_bundle(buffer.getvalue())
            assert report.imported == ["inline"]
            assert sorted(report.skipped) == ["projects/project-broken.json", "projects/project-noid.json"]
            stored = await engine.documents.load("inline")
            assert stored.thumbnail_url == "blob://images/inline-thumbnail-main-image"
        finally:
            await engine.close()

    asyncio.run(scenario())


def test_invalid_bundles_are_rejected(make_engine):
    empty = io.BytesIO()
    with zipfile.ZipFile(empty, "w") as archive:
        archive.writestr("readme.txt", "nothing here")

    async def scenario():
        engine = make_engine()
        await engine.open()
        try:
            for payload in (b"definitely not a zip", empty.getvalue()):
                try:
                    await engine.import_bundle(payload)
                except BundleFormatError as exc:
                    assert exc.code == "BUNDLE_INVALID"
                else:
                    raise AssertionError("expected BundleFormatError")
        finally:
            await engine.close()

    asyncio.run(scenario())
