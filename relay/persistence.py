from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from relay.clock import now_ms
from relay.models import FlushOutcome, ReplicationOutcome
from relay.replication import GitHubReplicator

logger = logging.getLogger(__name__)


def serialize_document(tree: Any) -> str:
    return json.dumps(tree, ensure_ascii=False, indent=2)


def read_document(path: Path) -> dict[str, Any]:
    """Load a document file. Missing file -> empty document.

    A file that doesn't hold a JSON object is moved aside (``<name>.corrupt-<ms>``)
    so the next flush can't overwrite whatever was in it.
    """

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}

    try:
        tree = json.loads(raw)
    except ValueError:
        tree = None
    if isinstance(tree, dict):
        return tree

    aside = path.with_name(f"{path.name}.corrupt-{now_ms()}")
    logger.error("Document file %s is not a JSON object; moved to %s", path, aside)
    os.replace(path, aside)
    return {}


def write_document(path: Path, payload: str) -> None:
    """Atomically replace `path` with `payload` (temp file + rename)."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


class DocumentFlusher:
    """Debounced, serialized persistence for one document.

    Contract:
      - `schedule()` marks the document dirty and returns a ticket.
      - A single background task wakes on the first ticket, waits out the
        debounce window, then writes whatever the tree holds at that moment.
        Tickets issued during the window are covered by the same write.
      - `wait_for(ticket)` resolves with the outcome of the flush covering it.
      - A failed write resolves its waiters with the failure but leaves the
        document dirty; the next wake-up or `aclose()` tries again.

    The document lock is held only while serializing; the file write and
    the remote push happen after it is released.
    """

    def __init__(
        self,
        *,
        doc: str,
        path: Path,
        lock: asyncio.Lock,
        snapshot: Callable[[], str],
        debounce_s: float,
        replicator: GitHubReplicator | None = None,
    ) -> None:
        self.doc = doc
        self.path = path
        self._lock = lock
        self._snapshot = snapshot
        self._debounce_s = debounce_s
        self._replicator = replicator

        self._requested = 0
        self._completed = 0
        # Highest ticket any flush attempt (successful or not) has covered.
        self._attempted = 0
        self._wake = asyncio.Event()
        self._closing = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._waiters: list[tuple[int, asyncio.Future[FlushOutcome]]] = []

        self.writes = 0
        self.last_outcome: FlushOutcome | None = None
        self.last_replication: ReplicationOutcome | None = None

    @property
    def dirty(self) -> bool:
        return self._requested > self._completed

    def schedule(self) -> int:
        self._requested += 1
        self._wake.set()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name=f"flush:{self.doc}")
        return self._requested

    async def wait_for(self, ticket: int) -> FlushOutcome:
        if ticket <= self._attempted and self.last_outcome is not None:
            return self.last_outcome
        fut: asyncio.Future[FlushOutcome] = asyncio.get_running_loop().create_future()
        self._waiters.append((ticket, fut))
        return await fut

    async def _run(self) -> None:
        while True:
            await self._wake.wait()
            if not self._closing.is_set() and self._debounce_s > 0:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._closing.wait(), timeout=self._debounce_s)
            try:
                ok = await self._flush_once()
            except Exception:
                logger.exception("Flush task for %r failed", self.doc)
                self._fail(self._requested)
                ok = False
            # On close, a failing disk gets one more attempt, not a retry loop.
            if self._closing.is_set() and (not ok or not self.dirty):
                return

    async def _flush_once(self) -> bool:
        self._wake.clear()
        if not self.dirty:
            return True
        target = self._requested

        async with self._lock:
            payload = self._snapshot()

        try:
            await asyncio.to_thread(write_document, self.path, payload)
        except OSError:
            logger.exception("Failed to write document %r to %s; still dirty", self.doc, self.path)
            self._fail(target)
            return False

        self.writes += 1
        logger.debug("Flushed %r (%d bytes) to %s", self.doc, len(payload), self.path)

        replication = None
        if self._replicator is not None:
            replication = await self._replicator.push(doc=self.doc, payload=payload)
            self.last_replication = replication

        self._completed = max(self._completed, target)
        self._resolve(target, FlushOutcome(doc=self.doc, ok=True, replication=replication))
        return True

    def _fail(self, target: int) -> None:
        self._resolve(target, FlushOutcome(doc=self.doc, ok=False, error="persist-failed"))

    def _resolve(self, target: int, outcome: FlushOutcome) -> None:
        self._attempted = max(self._attempted, target)
        self.last_outcome = outcome
        pending: list[tuple[int, asyncio.Future[FlushOutcome]]] = []
        for ticket, fut in self._waiters:
            if ticket <= target:
                if not fut.done():
                    fut.set_result(outcome)
            else:
                pending.append((ticket, fut))
        self._waiters = pending

    async def aclose(self) -> None:
        """Flush anything pending right away and stop the task."""

        self._closing.set()
        if self._task is None:
            return
        self._wake.set()
        await self._task
