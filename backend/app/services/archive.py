"""Move old ledger rows into ``archived_receipts`` in bounded batches."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import InvalidInput, SinkFailure
from app.models.receipt import ArchivedReceipt, ReceiptLedgerEntry
from app.schemas.receipt import ArchiveSummary
from app.utils.clock import as_utc

logger = logging.getLogger(__name__)

# One insert into the archive plus one delete from the ledger.
OPERATIONS_PER_ROW = 2


def _row_snapshot(row: ReceiptLedgerEntry) -> dict[str, Any]:
    snapshot: dict[str, Any] = {}
    for column in ReceiptLedgerEntry.__table__.columns:
        value = getattr(row, column.key)
        snapshot[column.key] = value.isoformat() if isinstance(value, datetime) else value
    return snapshot


def _db_cutoff(db: Session, cutoff: datetime) -> datetime:
    cutoff = as_utc(cutoff)
    if db.bind is not None and db.bind.dialect.name == "sqlite":
        return cutoff.replace(tzinfo=None)
    return cutoff


def archive_ledger_before(
    db: Session,
    cutoff: datetime,
    *,
    archived_by: Optional[str] = None,
    dry_run: bool = False,
    after_id: Optional[str] = None,
    max_batch_operations: int = 500,
) -> ArchiveSummary:
    """Archive ledger rows created before *cutoff*.

    Rows move in id order. Each commit holds at most *max_batch_operations*
    writes, and the returned checkpoint is the last id moved, so an
    interrupted run resumes by passing it back as *after_id*.
    """
    rows_per_batch = max_batch_operations // OPERATIONS_PER_ROW
    if rows_per_batch < 1:
        raise InvalidInput("archive batch size must allow at least one row")

    db_cutoff = _db_cutoff(db, cutoff)
    conditions = [ReceiptLedgerEntry.created_at < db_cutoff]
    if after_id:
        conditions.append(ReceiptLedgerEntry.id > after_id)

    if dry_run:
        count = db.execute(select(func.count()).select_from(ReceiptLedgerEntry).where(*conditions)).scalar_one()
        batches = -(-count // rows_per_batch) if count else 0
        logger.info("Archive dry run: %s rows in %s batches before %s", count, batches, cutoff)
        return ArchiveSummary(archived=count, batches=batches, dry_run=True, checkpoint=after_id)

    archived = 0
    batches = 0
    checkpoint = after_id
    while True:
        batch_conditions = [ReceiptLedgerEntry.created_at < db_cutoff]
        if checkpoint:
            batch_conditions.append(ReceiptLedgerEntry.id > checkpoint)
        rows = (
            db.execute(
                select(ReceiptLedgerEntry)
                .where(*batch_conditions)
                .order_by(ReceiptLedgerEntry.id.asc())
                .limit(rows_per_batch)
            )
            .scalars()
            .all()
        )
        if not rows:
            break
        last_id = rows[-1].id

        try:
            for row in rows:
                db.add(
                    ArchivedReceipt(
                        id=row.id,
                        user_id=row.user_id,
                        record=_row_snapshot(row),
                        original_created_at=row.created_at,
                        archived_by=archived_by,
                    )
                )
                db.delete(row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Archive batch %s failed after checkpoint %s", batches + 1, checkpoint)
            raise SinkFailure(
                "archive",
                f"Archive batch failed; resume from checkpoint {checkpoint!r}",
                context={"checkpoint": checkpoint, "archived": archived},
            ) from exc

        archived += len(rows)
        batches += 1
        checkpoint = last_id
        logger.info("Archived batch %s (%s rows, checkpoint %s)", batches, len(rows), checkpoint)

    return ArchiveSummary(archived=archived, batches=batches, dry_run=False, checkpoint=checkpoint)
