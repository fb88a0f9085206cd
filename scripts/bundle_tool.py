#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from episode_store.engine import build_engine
from episode_store.settings import EngineSettings


async def _export(settings: EngineSettings, project_ids: list[str], out: Path) -> dict[str, object]:
    engine = build_engine(settings)
    await engine.open()
    try:
        data = await engine.export_bundle(project_ids or None)
    finally:
        await engine.close()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)
    return {"bundle": str(out), "bytes": len(data), "project_ids": project_ids or "all"}


async def _import(settings: EngineSettings, bundle: Path) -> dict[str, object]:
    engine = build_engine(settings)
    await engine.open()
    try:
        report = await engine.import_bundle(bundle.read_bytes())
    finally:
        await engine.close()
    return {"bundle": str(bundle), **report.as_dict()}


def main() -> int:
    parser = argparse.ArgumentParser(description="Export projects to a zip bundle or import one")
    parser.add_argument("action", choices=["export", "import"])
    parser.add_argument("--bundle", required=True, help="zip path to write (export) or read (import)")
    parser.add_argument("--project-id", action="append", default=[], help="project to export; repeatable")
    parser.add_argument("--sqlite-path", default="", help="override EPS_STORE_SQLITE_PATH")
    args = parser.parse_args()

    settings = EngineSettings.from_env()
    if args.sqlite_path:
        settings = replace(settings, store_backend="sqlite", sqlite_path=args.sqlite_path)

    bundle = Path(args.bundle)
    if args.action == "export":
        summary = asyncio.run(_export(settings, list(args.project_id), bundle))
    else:
        if not bundle.exists():
            parser.error(f"bundle not found: {bundle}")
        summary = asyncio.run(_import(settings, bundle))
    summary["store_backend"] = settings.store_backend
    print(json.dumps(summary, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
