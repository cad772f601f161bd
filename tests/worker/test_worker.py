import uuid

import numpy as np
import pytest

from worker import worker as worker_module

class FakeConn:
    def __init__(self, pending=None):
        self.pending = pending or []
        self.fetch_calls = []
        self.execute_calls = []

    async def fetch(self, query, *args):        # noqa: ANN001
        self.fetch_calls.append((query, args))
        return self.pending

    async def execute(self, query, *args):      # noqa: ANN001
        self.execute_calls.append((query, args))

class FakeAcquire:
    def __init__(self, conn: FakeConn) -> None:
        self.conn = conn

    async def __aenter__(self) -> FakeConn:
        return self.conn

    async def __aexit__(self, exc_type, exc, tb) -> None:   # noqa: ANN001
        return None

class FakePool:
    def __init__(self, conn: FakeConn) -> None:
        self.conn = conn

    def acquire(self) -> FakeAcquire:
        return FakeAcquire(self.conn)

def bug_row(title, description):     # noqa: ANN001
    return {"id": uuid.uuid4(), "title": title, "description": description}

@pytest.mark.asyncio
async def test_process_batch_stores_embeddings(monkeypatch):
    conn = FakeConn([bug_row("Crash", "on save"), bug_row("Slow", None)])
    pool = FakePool(conn)
    seen = []

    def fake_embedding(title, description):     # noqa: ANN001
        seen.append((title, description))
        return np.array([0.1, 0.2], dtype=np.float32)

    monkeypatch.setattr(worker_module.embeddings, "embedding_for_bug", fake_embedding)

    results = await worker_module.process_batch(pool, batch_size=5)

    assert results == {"processed": 2, "failed": 0, "skipped": 0}
    assert conn.fetch_calls[0][1] == (5, worker_module.embedding_store.DEFAULT_RETRY_SECONDS)
    assert seen == [("Crash", "on save"), ("Slow", "")]
    updates = [call for call in conn.execute_calls if "UPDATE bug_reports" in call[0]]
    assert len(updates) == 2
    _, args = updates[0]
    assert args[1] == "[0.10000000149011612,0.20000000298023224]"
    assert args[2] == worker_module.embeddings.DEFAULT_MODEL

@pytest.mark.asyncio
async def test_process_batch_skips_bugs_without_text(monkeypatch):
    conn = FakeConn([bug_row("", "  ")])
    pool = FakePool(conn)

    def unexpected(title, description):     # noqa: ANN001
        raise AssertionError("should not embed empty text")

    monkeypatch.setattr(worker_module.embeddings, "embedding_for_bug", unexpected)

    results = await worker_module.process_batch(pool)

    assert results == {"processed": 0, "failed": 0, "skipped": 1}
    assert len(conn.execute_calls) == 1
    assert "embedding_attempted_at = NOW()" in conn.execute_calls[0][0]

@pytest.mark.asyncio
async def test_process_batch_continues_after_a_failure(monkeypatch):
    conn = FakeConn([bug_row("First", "boom"), bug_row("Second", "fine")])
    pool = FakePool(conn)

    def flaky(title, description):     # noqa: ANN001
        if title == "First":
            raise RuntimeError("model unavailable")
        return np.array([1.0, 0.0], dtype=np.float32)

    monkeypatch.setattr(worker_module.embeddings, "embedding_for_bug", flaky)

    results = await worker_module.process_batch(pool)

    assert results == {"processed": 1, "failed": 1, "skipped": 0}
    stored = [call for call in conn.execute_calls if "SET embedding =" in call[0]]
    deferred = [call for call in conn.execute_calls if "SET embedding_attempted_at" in call[0]]
    assert len(stored) == 1
    assert len(deferred) == 1

@pytest.mark.asyncio
async def test_process_batch_with_nothing_pending():
    conn = FakeConn([])
    pool = FakePool(conn)

    results = await worker_module.process_batch(pool)

    assert results == {"processed": 0, "failed": 0, "skipped": 0}
    assert not conn.execute_calls

class BugTableConn:
    """Keeps pending-embedding state so repeated batches see earlier writes."""

    def __init__(self, bugs):
        self.bugs = bugs

    async def fetch(self, query, limit, retry_after_seconds):     # noqa: ANN001
        pending = [
            bug for bug in self.bugs
            if bug["embedding"] is None and not bug["attempted"]
        ]
        return [
            {"id": bug["id"], "title": bug["title"], "description": bug["description"]}
            for bug in pending[:limit]
        ]

    async def execute(self, query, bug_id, *args):      # noqa: ANN001
        bug = next(bug for bug in self.bugs if bug["id"] == bug_id)
        if "SET embedding =" in query:
            bug["embedding"] = args[0]
        bug["attempted"] = True

@pytest.mark.asyncio
async def test_unembeddable_bugs_do_not_block_newer_ones(monkeypatch):
    blank = [dict(bug_row("", ""), embedding=None, attempted=False) for _ in range(10)]
    fresh = dict(bug_row("Login loops", "redirects back to sign-in"), embedding=None, attempted=False)
    pool = FakePool(BugTableConn(blank + [fresh]))
    monkeypatch.setattr(
        worker_module.embeddings,
        "embedding_for_bug",
        lambda title, description: np.array([1.0, 0.0], dtype=np.float32),
    )

    first = await worker_module.process_batch(pool, batch_size=10)
    second = await worker_module.process_batch(pool, batch_size=10)

    assert first == {"processed": 0, "failed": 0, "skipped": 10}
    assert second == {"processed": 1, "failed": 0, "skipped": 0}
    assert fresh["embedding"] == "[1.0,0.0]"
