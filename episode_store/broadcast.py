from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

NOTICE_KINDS = ("project-saved", "project-deleted", "index-rebuilt")

NoticeHandler = Callable[["SyncNotice"], Awaitable[None] | None]


@dataclass(frozen=True)
class SyncNotice:
    kind: str
    project_id: str | None
    origin: str

    def to_json(self) -> str:
        return json.dumps({"kind": self.kind, "projectId": self.project_id, "origin": self.origin})

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SyncNotice | None":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("kind") not in NOTICE_KINDS:
            return None
        project_id = data.get("projectId")
        return cls(
            kind=str(data["kind"]),
            project_id=str(project_id) if project_id is not None else None,
            origin=str(data.get("origin") or ""),
        )


def _new_origin() -> str:
    return f"tab_{uuid.uuid4().hex[:12]}"


class _NoticeDispatcher:
    def __init__(self, origin: str | None) -> None:
        self.origin = origin or _new_origin()
        self._handlers: list[NoticeHandler] = []

    def subscribe(self, handler: NoticeHandler) -> None:
        self._handlers.append(handler)

    def _make_notice(self, kind: str, project_id: str | None) -> SyncNotice:
        if kind not in NOTICE_KINDS:
            raise ValueError(f"unsupported notice kind: {kind}")
        return SyncNotice(kind=kind, project_id=project_id, origin=self.origin)

    async def _dispatch(self, notice: SyncNotice) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(notice)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("sync notice handler failed for %s/%s: %s", notice.kind, notice.project_id, exc)


class InMemoryBroadcastHub:
    """Connects sibling channels living in one process."""

    def __init__(self) -> None:
        self._channels: list[InMemoryBroadcastChannel] = []

    def channel(self, origin: str | None = None) -> "InMemoryBroadcastChannel":
        return InMemoryBroadcastChannel(self, origin=origin)

    def _attach(self, channel: "InMemoryBroadcastChannel") -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    def _detach(self, channel: "InMemoryBroadcastChannel") -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _deliver(self, notice: SyncNotice, sender: "InMemoryBroadcastChannel") -> None:
        for channel in list(self._channels):
            if channel is sender:
                continue
            channel._schedule(notice)


class InMemoryBroadcastChannel(_NoticeDispatcher):
    backend_name = "memory"

    def __init__(self, hub: InMemoryBroadcastHub, *, origin: str | None = None) -> None:
        super().__init__(origin)
        self._hub = hub
        self._tasks: set[asyncio.Task[None]] = set()
        hub._attach(self)

    async def start(self) -> None:
        self._hub._attach(self)

    async def publish(self, kind: str, project_id: str | None = None) -> SyncNotice:
        notice = self._make_notice(kind, project_id)
        self._hub._deliver(notice, self)
        return notice

    def _schedule(self, notice: SyncNotice) -> None:
        task = asyncio.get_running_loop().create_task(self._dispatch(notice))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    async def close(self) -> None:
        self._hub._detach(self)
        await self.drain()


def _import_redis() -> Any:
    try:
        import redis.asyncio as redis_asyncio  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for EPS_BROADCAST_BACKEND=redis; install redis>=5") from exc
    return redis_asyncio


class RedisBroadcastChannel(_NoticeDispatcher):
    """Pub/sub channel shared by every process connected to the same Redis."""

    backend_name = "redis"

    def __init__(self, *, dsn: str, channel: str = "episode-store-sync", origin: str | None = None) -> None:
        if not dsn:
            raise ValueError("REDIS_DSN must be provided for redis broadcast backend")
        super().__init__(origin)
        self.channel = channel
        redis_asyncio = _import_redis()
        self._client = redis_asyncio.Redis.from_url(dsn, decode_responses=True)
        self._pubsub: Any = None
        self._listener: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.get_running_loop().create_task(self._listen())

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            notice = SyncNotice.from_json(message.get("data"))
            if notice is None or notice.origin == self.origin:
                continue
            await self._dispatch(notice)

    async def publish(self, kind: str, project_id: str | None = None) -> SyncNotice:
        notice = self._make_notice(kind, project_id)
        await self._client.publish(self.channel, notice.to_json())
        return notice

    async def drain(self) -> None:
        return None

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        await self._client.aclose()


def create_broadcast_channel(
    backend: str,
    *,
    hub: InMemoryBroadcastHub | None = None,
    dsn: str = "",
    channel: str = "episode-store-sync",
    origin: str | None = None,
) -> InMemoryBroadcastChannel | RedisBroadcastChannel:
    if backend == "memory":
        return (hub or InMemoryBroadcastHub()).channel(origin=origin)
    if backend == "redis":
        if not dsn:
            raise ValueError("REDIS_DSN must be set when EPS_BROADCAST_BACKEND=redis")
        return RedisBroadcastChannel(dsn=dsn, channel=channel, origin=origin)
    raise RuntimeError(f"unsupported broadcast backend: {backend}")


def create_broadcast_channel_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    hub: InMemoryBroadcastHub | None = None,
) -> InMemoryBroadcastChannel | RedisBroadcastChannel:
    from episode_store.settings import EngineSettings

    settings = EngineSettings.from_env(environ)
    return create_broadcast_channel(
        settings.broadcast_backend,
        hub=hub,
        dsn=settings.redis_dsn,
        channel=settings.broadcast_channel,
    )
