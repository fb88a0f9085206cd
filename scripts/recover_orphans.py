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


async def _run(settings: EngineSettings, migrate: bool) -> dict[str, object]:
    engine = build_engine(settings)
    await engine.open()
    try:
        recovered = await engine.recover_orphans()
        reports = await engine.migrate_all() if migrate else []
        entries = await engine.list_projects()
    finally:
        await engine.close()
    return {
        "recovered": recovered,
        "indexed_total": len(entries),
        "migrated": [report.as_dict() for report in reports if report.changed],
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-index stored projects missing from the metadata index")
    parser.add_argument("--sqlite-path", default="", help="override EPS_STORE_SQLITE_PATH")
    parser.add_argument("--migrate", action="store_true", help="also move large inline media into the blob store")
    args = parser.parse_args()

    settings = EngineSettings.from_env()
    if args.sqlite_path:
        settings = replace(settings, store_backend="sqlite", sqlite_path=args.sqlite_path)
    if settings.store_backend == "memory":
        parser.error("the memory backend holds no persisted projects; use --sqlite-path or EPS_STORE_BACKEND=sqlite")

    summary = asyncio.run(_run(settings, args.migrate))
    summary["store_backend"] = settings.store_backend
    print(json.dumps(summary, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
