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


async def _run(action: str, mirror_dir: str, settings: EngineSettings) -> dict[str, object]:
    engine = build_engine(settings)
    await engine.open()
    try:
        engine.attach_mirror(mirror_dir)
        if action == "sync":
            return await engine.sync_mirror_all()
        return await engine.restore_from_mirror()
    finally:
        await engine.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Mirror the local episode store to a directory, or restore from it")
    parser.add_argument("action", choices=["sync", "restore"])
    parser.add_argument("--dir", default="", help="mirror directory (defaults to EPS_MIRROR_DIR)")
    parser.add_argument("--sqlite-path", default="", help="override EPS_STORE_SQLITE_PATH")
    args = parser.parse_args()

    settings = EngineSettings.from_env()
    if args.sqlite_path:
        settings = replace(settings, store_backend="sqlite", sqlite_path=args.sqlite_path)
    mirror_dir = args.dir or settings.mirror_dir
    if not mirror_dir:
        parser.error("--dir or EPS_MIRROR_DIR is required")
    settings = replace(settings, mirror_dir="")

    result = asyncio.run(_run(args.action, mirror_dir, settings))
    summary = {
        "action": args.action,
        "mirror_dir": mirror_dir,
        "store_backend": settings.store_backend,
        "result": result,
    }
    print(json.dumps(summary, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
