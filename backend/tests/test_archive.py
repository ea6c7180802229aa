from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import InvalidInput, SinkFailure
from app.models.receipt import ArchivedReceipt, ReceiptLedgerEntry
from app.services.archive import archive_ledger_before

OLD = datetime(2023, 1, 1, 9, 0, 0)
NEW = datetime(2024, 6, 1, 9, 0, 0)
CUTOFF = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _ledger_row(receipt_id, created_at):
    return ReceiptLedgerEntry(
        id=receipt_id,
        user_id="u-1",
        vendor_name="Acme",
        transaction_date="2023-01-01",
        total_amount=10.0,
        category="Supplies",
        currency="GBP",
        entity="Unassigned",
        original_currency="GBP",
        original_amount=10.0,
        exchange_rate=1.0,
        receipt_data={"vendor_name": "Acme"},
        receipt_timestamp="2023-01-01T09:00:00Z",
        processed_by="user",
        validation_status="passed",
        created_at=created_at,
    )


@pytest.fixture
def seeded(db_session):
    for i in range(7):
        db_session.add(_ledger_row(f"old-{i}", OLD))
    db_session.add(_ledger_row("new-0", NEW))
    db_session.commit()
    return db_session


def test_archive_moves_old_rows_in_bounded_batches(seeded):
    summary = archive_ledger_before(seeded, CUTOFF, archived_by="admin-1", max_batch_operations=6)

    assert summary.archived == 7
    assert summary.batches == 3
    assert summary.checkpoint == "old-6"
    assert seeded.query(ReceiptLedgerEntry).count() == 1
    assert seeded.get(ReceiptLedgerEntry, "new-0") is not None

    archived = seeded.get(ArchivedReceipt, "old-3")
    assert archived.archived_by == "admin-1"
    assert archived.record["vendor_name"] == "Acme"
    assert archived.record["created_at"].startswith("2023-01-01")


def test_archive_resumes_after_checkpoint(seeded):
    summary = archive_ledger_before(seeded, CUTOFF, after_id="old-4")

    assert summary.archived == 2
    assert seeded.query(ArchivedReceipt).count() == 2
    assert seeded.get(ReceiptLedgerEntry, "old-0") is not None


def test_dry_run_counts_without_moving(seeded):
    summary = archive_ledger_before(seeded, CUTOFF, dry_run=True, max_batch_operations=4)

    assert summary.dry_run is True
    assert summary.archived == 7
    assert summary.batches == 4
    assert seeded.query(ReceiptLedgerEntry).count() == 8
    assert seeded.query(ArchivedReceipt).count() == 0


def test_batch_must_fit_one_row(db_session):
    with pytest.raises(InvalidInput):
        archive_ledger_before(db_session, CUTOFF, max_batch_operations=1)


def test_failed_batch_reports_the_last_good_checkpoint(seeded):
    real_commit = seeded.commit
    calls = {"n": 0}

    def flaky_commit():
        calls["n"] += 1
        if calls["n"] == 2:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        return real_commit()

    with patch.object(seeded, "commit", side_effect=flaky_commit):
        with pytest.raises(SinkFailure) as exc:
            archive_ledger_before(seeded, CUTOFF, max_batch_operations=6)

    assert exc.value.sink == "archive"
    assert exc.value.context == {"checkpoint": "old-2", "archived": 3}
    assert seeded.query(ArchivedReceipt).count() == 3
