from __future__ import annotations

import json
from pathlib import Path

import pytest

from relay.doc_store import DocumentStore
from relay.doc_tree import MISSING
from relay.errors import PersistFailed, ValidationFailed


def _read(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.mark.asyncio
async def test_set_get_and_flush(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    res = await store.set(None, "a.b.c", 42)
    assert res.doc == "store"
    assert await store.get(None, "a.b.c") == 42
    assert await store.get(None, "a.b") == {"c": 42}
    assert await store.get(None, "a.nope") is MISSING

    outcome = await store.wait_flushed("store", res.ticket)
    assert outcome.ok is True
    assert outcome.replication is None
    assert _read(tmp_path / "store.json") == {"a": {"b": {"c": 42}}}


@pytest.mark.asyncio
async def test_reads_are_copies(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)
    await store.set("w", "players", {"x": {"sec": 1}})

    snapshot = await store.get("w", "players")
    snapshot["x"]["sec"] = 999

    assert await store.get("w", "players.x.sec") == 1


@pytest.mark.asyncio
async def test_increment_twice_accumulates(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    first = await store.increment("stats", "players.X.sec", 60)
    second = await store.increment("stats", "players.X.sec", 60)

    assert first.value == 60
    assert second.value == 120
    assert await store.get("stats", "players.X.sec") == 120

    await store.wait_flushed("stats", second.ticket)
    assert _read(tmp_path / "stats.json") == {"players": {"X": {"sec": 120}}}


@pytest.mark.asyncio
async def test_increment_over_non_number_starts_from_zero(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)
    await store.set(None, "n", "hello")

    res = await store.increment(None, "n", 2.5)
    assert res.value == 2.5


@pytest.mark.asyncio
async def test_burst_of_writes_collapses_into_one_flush(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=50)

    last = None
    for i in range(10):
        last = await store.set(None, "counter", i)
    assert last is not None

    outcome = await store.wait_flushed("store", last.ticket)
    assert outcome.ok is True
    assert store.flusher("store").writes == 1
    assert _read(tmp_path / "store.json") == {"counter": 9}


@pytest.mark.asyncio
async def test_documents_are_independent_files(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)
    a = await store.set("alpha", "k", 1)
    b = await store.set("beta", "k", 2)

    await store.wait_flushed("alpha", a.ticket)
    await store.wait_flushed("beta", b.ticket)

    assert _read(tmp_path / "alpha.json") == {"k": 1}
    assert _read(tmp_path / "beta.json") == {"k": 2}
    assert store.loaded_documents() == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_existing_file_is_loaded_lazily(tmp_path: Path) -> None:
    (tmp_path / "store.json").write_text(json.dumps({"worlds": {"w1": {"counter": 3}}}), encoding="utf-8")
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    assert store.loaded_documents() == []
    assert await store.get(None, "worlds.w1.counter") == 3

    res = await store.increment(None, "worlds.w1.counter", 1)
    assert res.value == 4


@pytest.mark.asyncio
async def test_corrupt_file_is_moved_aside(tmp_path: Path) -> None:
    (tmp_path / "store.json").write_text("{oops", encoding="utf-8")
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    assert await store.get(None) == {}
    assert list(tmp_path.glob("store.json.corrupt-*"))
    assert not (tmp_path / "store.json").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", ["../etc", "a/b", "x" * 65, "dots.json"])
async def test_rejects_unsafe_document_names(tmp_path: Path, bad: str) -> None:
    store = DocumentStore(root=tmp_path)
    with pytest.raises(ValidationFailed) as exc:
        await store.set(bad, "k", 1)
    assert exc.value.code == "invalid-doc"


@pytest.mark.asyncio
async def test_set_requires_path(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path)
    with pytest.raises(ValidationFailed) as exc:
        await store.set(None, "", 1)
    assert exc.value.code == "path-required"
    assert store.flusher("store").dirty is False


@pytest.mark.asyncio
async def test_register_creates_then_refreshes(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    first = await store.register(None, world_id="w1", username="  Hyroe ")
    assert first.created is True
    assert first.path == "players.Hyroe"
    assert first.value["visits"] == 1
    assert first.value["firstSeen"] == first.value["lastSeen"]

    again = await store.register(None, world_id="w2", username="Hyroe")
    assert again.created is False
    assert again.value["visits"] == 2
    assert again.value["worldId"] == "w2"
    assert again.value["firstSeen"] == first.value["firstSeen"]


@pytest.mark.asyncio
@pytest.mark.parametrize(("username", "code"), [("", "username-required"), ("a.b", "invalid-username")])
async def test_register_validates_username(tmp_path: Path, username: str, code: str) -> None:
    store = DocumentStore(root=tmp_path)
    with pytest.raises(ValidationFailed) as exc:
        await store.register(None, world_id="w", username=username)
    assert exc.value.code == code


@pytest.mark.asyncio
async def test_close_flushes_pending_writes_immediately(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=60_000)
    await store.set(None, "k", "v")
    assert not (tmp_path / "store.json").exists()

    await store.aclose()

    assert _read(tmp_path / "store.json") == {"k": "v"}


@pytest.mark.asyncio
async def test_write_failure_keeps_memory_state(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = DocumentStore(root=blocker, debounce_ms=5)

    res = await store.set(None, "k", 1)
    outcome = await store.wait_flushed("store", res.ticket)

    assert outcome.ok is False
    assert outcome.error == "persist-failed"
    assert await store.get(None, "k") == 1


@pytest.mark.asyncio
async def test_failed_flush_is_retried_on_close(tmp_path: Path) -> None:
    root = tmp_path / "data"
    root.write_text("not a directory yet", encoding="utf-8")
    store = DocumentStore(root=root, debounce_ms=5)

    res = await store.set(None, "k", 1)
    outcome = await store.wait_flushed("store", res.ticket)
    assert outcome.ok is False
    assert store.flusher("store").dirty is True

    root.unlink()
    await store.aclose()

    assert _read(root / "store.json") == {"k": 1}
    assert store.flusher("store").dirty is False


@pytest.mark.asyncio
async def test_close_gives_up_when_disk_still_fails(tmp_path: Path) -> None:
    root = tmp_path / "data"
    root.write_text("never a directory", encoding="utf-8")
    store = DocumentStore(root=root, debounce_ms=60_000)

    await store.set(None, "k", 1)
    await store.aclose()

    assert store.flusher("store").dirty is True
    assert store.flusher("store").last_outcome is not None
    assert store.flusher("store").last_outcome.ok is False


@pytest.mark.asyncio
async def test_unreadable_file_is_never_overwritten(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "store.json").write_text(json.dumps({"keep": True}), encoding="utf-8")
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    def _denied(path: Path) -> dict:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("relay.doc_store.read_document", _denied)
    with pytest.raises(PersistFailed) as exc:
        await store.set(None, "k", 1)
    assert exc.value.code == "persist-failed"
    assert store.loaded_documents() == []
    assert store.flusher("store").dirty is False

    monkeypatch.undo()
    res = await store.set(None, "k", 1)
    await store.wait_flushed("store", res.ticket)

    assert _read(tmp_path / "store.json") == {"keep": True, "k": 1}


@pytest.mark.asyncio
async def test_reading_unknown_documents_does_not_register_them(tmp_path: Path) -> None:
    store = DocumentStore(root=tmp_path, debounce_ms=5)

    for i in range(20):
        assert await store.get(f"ghost{i}", "a.b") is MISSING
    assert await store.get("ghost0") == {}

    assert store._docs == {}
    assert not list(tmp_path.iterdir())
