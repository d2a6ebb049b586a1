from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from credit_ledger.cache import memory as cache_memory
from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import DuplicateRecordError
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.event import CreditEvent, CreditEventType
from credit_ledger.models.ledger import OperationEventType
from credit_ledger.services.idempotency import IdempotencyGuard


@pytest.mark.asyncio
async def test_entries_are_persisted_and_mirrored_to_file(tmp_path):
    db = InMemoryDBManager()
    log_path = tmp_path / "logs" / "ledger.log"
    ledger = LedgerLogger(db=db, file_path=log_path)

    await ledger.log_operation(
        user_id="user-1", message="Credits reserved", details={"credits": 30}, correlation_id="c-1"
    )
    await ledger.log_error(message="Insufficient credits", details={"requested": 500})
    await ledger.log_system(message="Backfill completed", details={"granted": 3})

    assert [e.event_type for e in db.operation_log] == [
        OperationEventType.OPERATION,
        OperationEventType.ERROR,
        OperationEventType.SYSTEM,
    ]
    lines = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert len(lines) == 3
    assert lines[0]["correlation_id"] == "c-1"
    assert lines[0]["details"] == {"credits": 30}
    assert lines[1]["event_type"] == "error"


@pytest.mark.asyncio
async def test_ledger_without_file_only_persists(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db)
    await ledger.log_system(message="started", details={})
    assert len(db.operation_log) == 1
    assert list(tmp_path.iterdir()) == []


def _event(key: str, user_id: str = "user-1") -> CreditEvent:
    return CreditEvent(
        user_id=user_id,
        type=CreditEventType.GRANT,
        credits=10,
        balance_after=10,
        reference_type="test",
        reference_id=key,
        idempotency_key=key,
    )


@pytest.mark.asyncio
async def test_idempotency_guard_runs_effect_once():
    db = InMemoryDBManager()
    guard = IdempotencyGuard(db)
    calls = []

    async def effect():
        calls.append("effect")
        await guard.record(_event("k-1"))
        return "applied"

    async def replay(event):
        return f"replayed {event.idempotency_key}"

    assert await guard.apply_once("k-1", effect, replay) == "applied"
    assert await guard.apply_once("k-1", effect, replay) == "replayed k-1"
    assert calls == ["effect"]

    # record() is insert-if-missing and keeps the first event.
    stored = await guard.record(_event("k-1", user_id="someone-else"))
    assert stored.user_id == "user-1"


@pytest.mark.asyncio
async def test_idempotency_guard_replays_when_a_concurrent_writer_wins():
    db = InMemoryDBManager()
    guard = IdempotencyGuard(db)

    async def effect():
        # Another caller records the key between our check and our insert.
        await db.insert_event(_event("k-2", user_id="winner"))
        await db.insert_event(_event("k-2"))
        return "applied"

    async def replay(event):
        return event.user_id

    assert await guard.apply_once("k-2", effect, replay) == "winner"

    async def unrelated_failure():
        raise DuplicateRecordError("credit_reservations", "res-1")

    with pytest.raises(DuplicateRecordError):
        await guard.apply_once("k-3", unrelated_failure, replay)


@pytest.mark.asyncio
async def test_in_memory_cache_expires_entries(monkeypatch):
    cache = InMemoryAsyncCache()
    clock = [1000.0]
    monkeypatch.setattr(cache_memory, "time", SimpleNamespace(monotonic=lambda: clock[0]))

    await cache.set("a", {"v": 1}, ttl_seconds=5)
    await cache.set("b", {"v": 2})
    assert await cache.get("a") == {"v": 1}

    clock[0] += 6
    assert await cache.get("a") is None
    assert await cache.get("b") == {"v": 2}
    assert len(cache) == 1
