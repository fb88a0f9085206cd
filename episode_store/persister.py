from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from episode_store.schemas import MetadataEntry, ProjectDocument

logger = logging.getLogger(__name__)

AfterCommitHook = Callable[[ProjectDocument], Awaitable[None]]


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class SaveOutcome(str, Enum):
    COMMITTED = "committed"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SaveTicket:
    """Handle returned by ``DebouncedPersister.schedule``.

    Awaiting the ticket yields the outcome of this particular request. A request
    replaced by a newer one for the same document resolves as ``SUPERSEDED``,
    never as ``COMMITTED``; ``landed()`` follows the replacement chain and yields
    the outcome of the write that finally carried the changes.
    """

    def __init__(self, project_id: str, loop: asyncio.AbstractEventLoop) -> None:
        self.project_id = project_id
        self.ticket_id = f"save_{uuid.uuid4().hex[:12]}"
        self.superseded_by: SaveTicket | None = None
        self.error: BaseException | None = None
        self._future: asyncio.Future[SaveOutcome] = loop.create_future()

    def __await__(self):
        return asyncio.shield(self._future).__await__()

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def outcome(self) -> SaveOutcome | None:
        if not self._future.done():
            return None
        return self._future.result()

    async def landed(self) -> SaveOutcome:
        ticket: SaveTicket = self
        while True:
            outcome = await ticket
            if outcome is SaveOutcome.SUPERSEDED and ticket.superseded_by is not None:
                ticket = ticket.superseded_by
                continue
            return outcome

    def _resolve(self, outcome: SaveOutcome, error: BaseException | None = None) -> None:
        if self._future.done():
            return
        self.error = error
        self._future.set_result(outcome)


@dataclass
class PersisterStats:
    scheduled: int = 0
    superseded: int = 0
    committed: int = 0
    failed: int = 0
    cancelled: int = 0
    merged: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "scheduled": self.scheduled,
            "superseded": self.superseded,
            "committed": self.committed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "merged": self.merged,
        }


@dataclass
class _PendingWrite:
    doc: ProjectDocument
    ticket: SaveTicket
    timer: asyncio.TimerHandle


class DebouncedPersister:
    """Coalesces bursts of writes into one commit per document id.

    Only the most recently scheduled document for an id is committed. Commits for
    the same id never overlap: a commit that fires while an earlier one is still
    in flight waits for it first.
    """

    def __init__(
        self,
        *,
        documents: Any,
        index: Any,
        merge_guard: Any = None,
        broadcaster: Any = None,
        debounce_ms: int = 500,
        max_commit_ms: int = 15000,
        saved_display_ms: int = 2000,
        error_display_ms: int = 3000,
    ) -> None:
        self._documents = documents
        self._index = index
        self._merge_guard = merge_guard
        self._broadcaster = broadcaster
        self.debounce_ms = debounce_ms
        self.max_commit_ms = max_commit_ms
        self.saved_display_ms = saved_display_ms
        self.error_display_ms = error_display_ms
        self.stats = PersisterStats()
        self._pending: dict[str, _PendingWrite] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._status = SaveStatus.IDLE
        self._status_listeners: list[Callable[[SaveStatus], None]] = []
        self._revert_timer: asyncio.TimerHandle | None = None
        self._after_commit: list[AfterCommitHook] = []

    @property
    def status(self) -> SaveStatus:
        return self._status

    def add_status_listener(self, listener: Callable[[SaveStatus], None]) -> None:
        self._status_listeners.append(listener)

    def add_after_commit_hook(self, hook: AfterCommitHook) -> None:
        self._after_commit.append(hook)

    def is_busy(self, project_id: str | None = None) -> bool:
        if project_id is None:
            return bool(self._pending or self._inflight)
        return project_id in self._pending or project_id in self._inflight

    def has_pending(self, project_id: str) -> bool:
        return project_id in self._pending

    def schedule(self, doc: ProjectDocument) -> SaveTicket:
        loop = asyncio.get_running_loop()
        ticket = SaveTicket(doc.id, loop)
        previous = self._pending.pop(doc.id, None)
        if previous is not None:
            previous.timer.cancel()
            previous.ticket.superseded_by = ticket
            previous.ticket._resolve(SaveOutcome.SUPERSEDED)
            self.stats.superseded += 1
        timer = loop.call_later(self.debounce_ms / 1000.0, self._fire, doc.id)
        self._pending[doc.id] = _PendingWrite(doc=doc, ticket=ticket, timer=timer)
        self.stats.scheduled += 1
        self._set_status(SaveStatus.SAVING)
        return ticket

    def cancel(self, project_id: str) -> bool:
        pending = self._pending.pop(project_id, None)
        if pending is None:
            return False
        pending.timer.cancel()
        pending.ticket._resolve(SaveOutcome.CANCELLED)
        self.stats.cancelled += 1
        if not self.is_busy():
            self._set_status(SaveStatus.IDLE)
        return True

    async def settle(self, project_id: str) -> None:
        task = self._inflight.get(project_id)
        if task is not None:
            await asyncio.wait([task])

    async def flush(self, project_id: str | None = None) -> None:
        ids = [project_id] if project_id is not None else list(self._pending)
        for item_id in ids:
            pending = self._pending.get(item_id)
            if pending is None:
                continue
            pending.timer.cancel()
            self._fire(item_id)
        tasks = [
            task for item_id, task in list(self._inflight.items()) if project_id is None or item_id == project_id
        ]
        if tasks:
            await asyncio.wait(tasks)

    async def close(self) -> None:
        await self.flush()
        if self._revert_timer is not None:
            self._revert_timer.cancel()
            self._revert_timer = None

    def _fire(self, project_id: str) -> None:
        pending = self._pending.pop(project_id, None)
        if pending is None:
            return
        previous = self._inflight.get(project_id)
        task = asyncio.get_running_loop().create_task(self._run_commit(pending, previous))
        self._inflight[project_id] = task

        def _done(finished: asyncio.Task[None]) -> None:
            if self._inflight.get(project_id) is finished:
                self._inflight.pop(project_id, None)

        task.add_done_callback(_done)

    async def _run_commit(self, pending: _PendingWrite, previous: asyncio.Task[None] | None) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        loop = asyncio.get_running_loop()
        watchdog = loop.call_later(self.max_commit_ms / 1000.0, self._on_overrun, pending.ticket)
        try:
            await self._commit(pending.doc)
        except Exception as exc:
            logger.error("failed to save project %s: %s", pending.doc.id, exc)
            self.stats.failed += 1
            pending.ticket._resolve(SaveOutcome.FAILED, exc)
            self._set_status(SaveStatus.ERROR, revert_after_ms=self.error_display_ms)
            return
        finally:
            watchdog.cancel()
        self.stats.committed += 1
        pending.ticket._resolve(SaveOutcome.COMMITTED)
        if self._others_busy(pending.doc.id):
            self._set_status(SaveStatus.SAVING)
        else:
            self._set_status(SaveStatus.SAVED, revert_after_ms=self.saved_display_ms)

    async def _commit(self, doc: ProjectDocument) -> None:
        doc.last_modified = max(int(time.time() * 1000), doc.last_modified + 1)
        if self._merge_guard is not None:
            doc, merged = await self._merge_guard.reconcile(doc)
            if merged:
                self.stats.merged += 1
        await self._documents.save(doc)
        await self._index.upsert(MetadataEntry.from_document(doc))
        logger.info("saved project %s", doc.id)
        if self._broadcaster is not None:
            try:
                await self._broadcaster.publish("project-saved", doc.id)
            except Exception as exc:
                logger.warning("broadcast after saving project %s failed: %s", doc.id, exc)
        for hook in list(self._after_commit):
            try:
                await hook(doc)
            except Exception as exc:
                logger.warning("after-commit hook for project %s failed: %s", doc.id, exc)

    def _others_busy(self, project_id: str) -> bool:
        if self._pending:
            return True
        return any(item_id != project_id for item_id in self._inflight)

    def _on_overrun(self, ticket: SaveTicket) -> None:
        if ticket.done:
            return
        logger.error("save of project %s exceeded %dms", ticket.project_id, self.max_commit_ms)
        self._set_status(SaveStatus.ERROR, revert_after_ms=self.error_display_ms)

    def _set_status(self, status: SaveStatus, *, revert_after_ms: int | None = None) -> None:
        if self._revert_timer is not None:
            self._revert_timer.cancel()
            self._revert_timer = None
        if status is not self._status:
            self._status = status
            for listener in list(self._status_listeners):
                listener(status)
        if revert_after_ms is not None:
            self._revert_timer = asyncio.get_running_loop().call_later(revert_after_ms / 1000.0, self._revert)

    def _revert(self) -> None:
        self._revert_timer = None
        self._set_status(SaveStatus.SAVING if self.is_busy() else SaveStatus.IDLE)
