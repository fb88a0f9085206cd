from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class EngineSettings:
    store_backend: str = "memory"
    sqlite_path: str = ".runtime/episode_store.sqlite3"
    broadcast_backend: str = "memory"
    redis_dsn: str = ""
    broadcast_channel: str = "episode-store-sync"
    root_key: str = "episode-store-state"
    debounce_ms: int = 500
    max_commit_ms: int = 15000
    saved_display_ms: int = 2000
    error_display_ms: int = 3000
    migration_threshold_bytes: int = 50 * 1024
    migration_budget_ms: int = 30000
    backup_min_previous_chars: int = 5000
    backup_max_new_chars: int = 3000
    mirror_dir: str = ""
    mirror_on_commit: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            store_backend=env.get("EPS_STORE_BACKEND", "memory").strip().lower() or "memory",
            sqlite_path=env.get("EPS_STORE_SQLITE_PATH", ".runtime/episode_store.sqlite3").strip()
            or ".runtime/episode_store.sqlite3",
            broadcast_backend=env.get("EPS_BROADCAST_BACKEND", "memory").strip().lower() or "memory",
            redis_dsn=env.get("REDIS_DSN", "").strip(),
            broadcast_channel=env.get("EPS_BROADCAST_CHANNEL", "episode-store-sync").strip() or "episode-store-sync",
            root_key=env.get("EPS_ROOT_KEY", "episode-store-state").strip() or "episode-store-state",
            debounce_ms=_env_int(env, "EPS_SAVE_DEBOUNCE_MS", default=500, minimum=0),
            max_commit_ms=_env_int(env, "EPS_SAVE_MAX_DURATION_MS", default=15000, minimum=1),
            saved_display_ms=_env_int(env, "EPS_SAVED_DISPLAY_MS", default=2000, minimum=0),
            error_display_ms=_env_int(env, "EPS_ERROR_DISPLAY_MS", default=3000, minimum=0),
            migration_threshold_bytes=_env_int(env, "EPS_MIGRATION_THRESHOLD_BYTES", default=50 * 1024, minimum=1),
            migration_budget_ms=_env_int(env, "EPS_MIGRATION_BUDGET_MS", default=30000, minimum=0),
            backup_min_previous_chars=_env_int(env, "EPS_BACKUP_MIN_PREVIOUS_CHARS", default=5000, minimum=0),
            backup_max_new_chars=_env_int(env, "EPS_BACKUP_MAX_NEW_CHARS", default=3000, minimum=0),
            mirror_dir=env.get("EPS_MIRROR_DIR", "").strip(),
            mirror_on_commit=_as_bool(env.get("EPS_MIRROR_ON_COMMIT", "true")),
        )
