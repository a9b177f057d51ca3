from __future__ import annotations

import asyncio
import copy
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from relay.clock import now_iso
from relay.doc_tree import MISSING, JsonValue, add_numbers, get_path, set_path, split_path
from relay.errors import PersistFailed, ValidationFailed
from relay.message_log import USERNAME_MAX
from relay.models import FlushOutcome, ReplicationOutcome
from relay.persistence import DocumentFlusher, read_document, serialize_document
from relay.replication import GitHubReplicator

logger = logging.getLogger(__name__)

DEFAULT_DOC = "store"

_DOC_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def normalize_doc_name(raw: str | None) -> str:
    name = (raw or "").strip() or DEFAULT_DOC
    if not _DOC_NAME_RE.match(name):
        raise ValidationFailed("invalid-doc")
    return name


@dataclass(frozen=True, slots=True)
class WriteResult:
    doc: str
    path: str
    value: Any
    timestamp: str
    # Flush ticket; pass to `DocumentStore.wait_flushed`.
    ticket: int
    created: bool = False


@dataclass(slots=True)
class _Document:
    name: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tree: dict[str, Any] | None = None
    flusher: DocumentFlusher | None = None


class DocumentStore:
    """Named JSON documents addressed by dotted paths.

    Each document is loaded on first use from ``<root>/<name>.json`` and from
    then on the in-memory tree is authoritative. Mutations run under the
    document's own lock and schedule a debounced flush; unrelated documents
    never wait on each other.
    """

    def __init__(
        self,
        *,
        root: Path,
        debounce_ms: int = 200,
        replicator: GitHubReplicator | None = None,
    ) -> None:
        self.root = root
        self._debounce_s = debounce_ms / 1000
        self._replicator = replicator
        self._docs: dict[str, _Document] = {}

    def file_for(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def _document(self, raw_name: str | None) -> _Document:
        name = normalize_doc_name(raw_name)
        d = self._docs.get(name)
        if d is None:
            d = _Document(name=name)
            d.flusher = DocumentFlusher(
                doc=name,
                path=self.file_for(name),
                lock=d.lock,
                snapshot=lambda d=d: serialize_document(d.tree if d.tree is not None else {}),
                debounce_s=self._debounce_s,
                replicator=self._replicator,
            )
            self._docs[name] = d
        return d

    async def _ensure_loaded(self, d: _Document) -> dict[str, Any]:
        # Caller holds d.lock.
        if d.tree is None:
            path = self.file_for(d.name)
            try:
                d.tree = await asyncio.to_thread(read_document, path)
            except OSError as e:
                # Stay unloaded; the next request retries the read.
                logger.exception("Failed to load document %r from %s", d.name, path)
                raise PersistFailed() from e
            else:
                logger.info("Loaded document %r from %s", d.name, path)
        return d.tree

    async def get(self, doc: str | None, path: str | None = None) -> Any:
        """Deep copy of the value at `path` (whole tree when empty), or MISSING."""

        name = normalize_doc_name(doc)
        d = self._docs.get(name)
        if d is None:
            # Reads of documents that were never written don't get cached.
            if not await asyncio.to_thread(self.file_for(name).exists):
                return get_path({}, path)
            d = self._document(name)
        if d.tree is None:
            async with d.lock:
                await self._ensure_loaded(d)
        value = get_path(d.tree, path)
        return value if value is MISSING else copy.deepcopy(value)

    async def set(self, doc: str | None, path: str | None, value: JsonValue) -> WriteResult:
        d = self._document(doc)
        if not split_path(path):
            raise ValidationFailed("path-required")
        p = (path or "").strip()

        async with d.lock:
            tree = await self._ensure_loaded(d)
            set_path(tree, p, value)
            stored = copy.deepcopy(value)

        return WriteResult(doc=d.name, path=p, value=stored, timestamp=now_iso(), ticket=self._schedule(d))

    async def increment(self, doc: str | None, path: str | None, delta: int | float) -> WriteResult:
        d = self._document(doc)
        if not split_path(path):
            raise ValidationFailed("path-required")
        p = (path or "").strip()

        async with d.lock:
            tree = await self._ensure_loaded(d)
            total = add_numbers(get_path(tree, p), delta)
            set_path(tree, p, total)

        return WriteResult(doc=d.name, path=p, value=total, timestamp=now_iso(), ticket=self._schedule(d))

    async def register(self, doc: str | None, *, world_id: str, username: str | None) -> WriteResult:
        """Create or refresh ``players.<username>`` with first/last-seen stamps."""

        d = self._document(doc)
        name = (username or "").strip()[:USERNAME_MAX]
        if not name:
            raise ValidationFailed("username-required")
        if "." in name:
            raise ValidationFailed("invalid-username")
        p = f"players.{name}"
        ts = now_iso()

        async with d.lock:
            tree = await self._ensure_loaded(d)
            current = get_path(tree, p)
            created = not isinstance(current, dict)
            if created:
                entry: dict[str, Any] = {"worldId": world_id, "firstSeen": ts, "lastSeen": ts, "visits": 1}
            else:
                entry = dict(current)
                visits = entry.get("visits")
                entry["visits"] = add_numbers(visits, 1)
                entry["lastSeen"] = ts
                entry["worldId"] = world_id
            set_path(tree, p, entry)
            stored = copy.deepcopy(entry)

        return WriteResult(
            doc=d.name,
            path=p,
            value=stored,
            timestamp=ts,
            ticket=self._schedule(d),
            created=created,
        )

    def _schedule(self, d: _Document) -> int:
        assert d.flusher is not None
        return d.flusher.schedule()

    async def wait_flushed(self, doc: str, ticket: int) -> FlushOutcome:
        d = self._document(doc)
        assert d.flusher is not None
        return await d.flusher.wait_for(ticket)

    def last_replication(self, doc: str) -> ReplicationOutcome | None:
        d = self._docs.get(doc)
        if d is None or d.flusher is None:
            return None
        return d.flusher.last_replication

    def flusher(self, doc: str) -> DocumentFlusher:
        d = self._document(doc)
        assert d.flusher is not None
        return d.flusher

    def loaded_documents(self) -> list[str]:
        return sorted(name for name, d in self._docs.items() if d.tree is not None)

    async def aclose(self) -> None:
        """Flush every dirty document immediately."""

        for d in list(self._docs.values()):
            if d.flusher is not None:
                await d.flusher.aclose()
