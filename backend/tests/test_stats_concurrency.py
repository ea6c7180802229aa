"""Optimistic concurrency on user_stats against a file-backed SQLite database."""

import threading
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.errors import SinkFailure
from app.models.receipt import Base, UserStats
from app.services.sinks import SqlStatsStore

USER_ID = "user-1"
AT = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def file_sessionmaker(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'stats.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    seed = factory()
    seed.add(UserStats(user_id=USER_ID, pending_receipts=10))
    seed.commit()
    seed.close()
    yield factory
    engine.dispose()


def test_competing_writer_forces_a_retry(file_sessionmaker):
    ours = file_sessionmaker()
    theirs = file_sessionmaker()
    calls = {"n": 0}

    def finalize_one(current):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another request commits between our read and our write.
            SqlStatsStore(theirs).transact(USER_ID, lambda c: c.with_finalized(5.0, "theirs.jpg", AT))
        return current.with_finalized(10.0, "ours.jpg", AT)

    try:
        result = SqlStatsStore(ours, backoff_seconds=0).transact(USER_ID, finalize_one)
        assert calls["n"] == 2
        assert result.total_receipts == 2
        assert result.total_amount == 15.0
        assert result.pending_receipts == 8
        assert result.last_receipt_processed == "ours.jpg"
    finally:
        ours.close()
        theirs.close()

    check = file_sessionmaker()
    row = check.get(UserStats, USER_ID)
    assert row.total_receipts == 2
    assert row.version == 3
    check.close()


def test_retries_exhausted_raises_sink_failure(file_sessionmaker):
    ours = file_sessionmaker()
    theirs = file_sessionmaker()

    def always_lose(current):
        SqlStatsStore(theirs).transact(USER_ID, lambda c: c.with_pending_delta(1))
        return current.with_pending_delta(-1)

    try:
        with pytest.raises(SinkFailure) as exc:
            SqlStatsStore(ours, max_retries=3, backoff_seconds=0).transact(USER_ID, always_lose)
        assert exc.value.sink == "stats"
    finally:
        ours.close()
        theirs.close()


def test_parallel_finalizations_are_all_counted(file_sessionmaker):
    workers = 8
    errors: list[Exception] = []
    barrier = threading.Barrier(workers)

    def worker(index):
        session = file_sessionmaker()
        try:
            barrier.wait()
            SqlStatsStore(session, max_retries=50, backoff_seconds=0.005).transact(
                USER_ID,
                lambda current: current.with_finalized(1.25, f"r-{index}.jpg", AT),
            )
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    check = file_sessionmaker()
    row = check.get(UserStats, USER_ID)
    assert row.total_receipts == workers
    assert row.total_amount == pytest.approx(workers * 1.25)
    assert row.pending_receipts == 10 - workers
    check.close()


def test_first_transaction_creates_the_row(file_sessionmaker):
    session = file_sessionmaker()
    try:
        store = SqlStatsStore(session)
        store.transact("new-user", lambda current: current.with_pending_delta(1))
        assert store.get("new-user").pending_receipts == 1
        assert store.get("nobody").total_receipts == 0
    finally:
        session.close()
