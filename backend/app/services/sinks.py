"""Storage contracts used by the finalizer, plus their SQLAlchemy adapters.

Each adapter owns its transaction and commits its own work, so one sink
failing never rolls back what another sink already acknowledged.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import SinkFailure
from app.models.receipt import PendingReceipt, ReceiptLedgerEntry, RejectedReceipt, UserStats
from app.schemas.receipt import PendingStatus, ReceiptRecord, TenantSheetRoute
from app.utils.clock import now_utc

logger = logging.getLogger(__name__)


@dataclass
class PendingEntry:
    id: str
    user_id: str
    receipt_data: Optional[dict[str, Any]]
    status: str = PendingStatus.PENDING_REVIEW.value
    file_name: Optional[str] = None
    validation_errors: list[str] = field(default_factory=list)
    validation_warnings: list[str] = field(default_factory=list)
    review_requested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerAck:
    receipt_id: str
    created: bool
    sheets_write_success: bool = False
    sheet_link: Optional[str] = None
    stats_applied: bool = False
    record: Optional[ReceiptRecord] = None


@dataclass(frozen=True)
class StatsSnapshot:
    total_receipts: int = 0
    total_amount: float = 0.0
    pending_receipts: int = 0
    last_receipt_processed: Optional[str] = None
    last_receipt_at: Optional[datetime] = None

    def with_finalized(self, amount: float, file_name: Optional[str], at: datetime) -> "StatsSnapshot":
        return replace(
            self,
            total_receipts=self.total_receipts + 1,
            total_amount=round(self.total_amount + (amount or 0.0), 2),
            pending_receipts=max(0, self.pending_receipts - 1),
            last_receipt_processed=file_name or self.last_receipt_processed,
            last_receipt_at=at,
        )

    def with_pending_delta(self, delta: int) -> "StatsSnapshot":
        return replace(self, pending_receipts=max(0, self.pending_receipts + delta))


# --- Contracts ---


class PendingQueue(abc.ABC):
    @abc.abstractmethod
    def get(self, receipt_id: str) -> Optional[PendingEntry]:
        ...

    @abc.abstractmethod
    def add(self, entry: PendingEntry) -> PendingEntry:
        ...

    @abc.abstractmethod
    def mark_needs_review(
        self,
        receipt_id: str,
        *,
        errors: list[str],
        warnings: list[str],
        requested_at: datetime,
    ) -> None:
        ...

    @abc.abstractmethod
    def remove(self, receipt_id: str) -> bool:
        """Remove a draft. Removing a missing draft is a no-op returning False."""


class LedgerSink(abc.ABC):
    """Durable system of record. A write for an existing id is acknowledged, not duplicated."""

    @abc.abstractmethod
    def write(
        self,
        receipt_id: str,
        user_id: str,
        record: ReceiptRecord,
        *,
        file_name: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> LedgerAck:
        ...

    @abc.abstractmethod
    def record_sync(
        self,
        receipt_id: str,
        *,
        sheets_write_success: bool,
        sheet_link: Optional[str],
        sheet_config_id: Optional[str],
    ) -> None:
        ...

    @abc.abstractmethod
    def stage_stats_applied(self, receipt_id: str) -> None:
        """Flag the stats update as applied, inside the stats transaction."""


class SpreadsheetSink(abc.ABC):
    name: str = "spreadsheet"

    @abc.abstractmethod
    def append_row(self, route: TenantSheetRoute, record: ReceiptRecord) -> None:
        ...

    @abc.abstractmethod
    def append_accountant_row(self, route: TenantSheetRoute, record: ReceiptRecord) -> None:
        ...

    @abc.abstractmethod
    def validate_sheet_headers(self, sheet_id: str, tab_name: Optional[str] = None) -> dict[str, Any]:
        """Report whether row 1 of the main tab carries the expected headers."""


class StatsStore(abc.ABC):
    @abc.abstractmethod
    def transact(
        self,
        user_id: str,
        fn: Callable[[StatsSnapshot], StatsSnapshot],
        *,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> StatsSnapshot:
        """Apply *fn* as an atomic read-modify-write, retrying on conflict."""

    @abc.abstractmethod
    def get(self, user_id: str) -> StatsSnapshot:
        ...


class RejectedStore(abc.ABC):
    @abc.abstractmethod
    def store(
        self,
        entry: PendingEntry,
        *,
        rejected_by: str,
        rejected_at: datetime,
        notes: str,
    ) -> bool:
        """Store the rejected draft. Returns False when it was already stored."""


# --- SQLAlchemy adapters ---


def _entry_from_row(row: PendingReceipt) -> PendingEntry:
    return PendingEntry(
        id=row.id,
        user_id=row.user_id,
        receipt_data=dict(row.receipt_data) if row.receipt_data is not None else None,
        status=row.status,
        file_name=row.file_name,
        validation_errors=list(row.validation_errors or []),
        validation_warnings=list(row.validation_warnings or []),
        review_requested_at=row.review_requested_at,
        created_at=row.created_at,
    )


class SqlPendingQueue(PendingQueue):
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, receipt_id: str) -> Optional[PendingEntry]:
        row = self.db.get(PendingReceipt, receipt_id, populate_existing=True)
        return _entry_from_row(row) if row is not None else None

    def add(self, entry: PendingEntry) -> PendingEntry:
        row = PendingReceipt(
            id=entry.id,
            user_id=entry.user_id,
            file_name=entry.file_name,
            status=entry.status,
            receipt_data=entry.receipt_data,
            validation_errors=entry.validation_errors,
            validation_warnings=entry.validation_warnings,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return _entry_from_row(row)

    def mark_needs_review(
        self,
        receipt_id: str,
        *,
        errors: list[str],
        warnings: list[str],
        requested_at: datetime,
    ) -> None:
        row = self.db.get(PendingReceipt, receipt_id)
        if row is None:
            return
        row.status = PendingStatus.NEEDS_ADMIN_REVIEW.value
        row.validation_errors = list(errors)
        row.validation_warnings = list(warnings)
        row.review_requested_at = requested_at
        self.db.commit()

    def remove(self, receipt_id: str) -> bool:
        result = self.db.execute(delete(PendingReceipt).where(PendingReceipt.id == receipt_id))
        self.db.commit()
        return bool(result.rowcount)

    def list_for_user(self, user_id: str) -> list[PendingEntry]:
        rows = (
            self.db.execute(
                select(PendingReceipt)
                .where(PendingReceipt.user_id == user_id)
                .order_by(PendingReceipt.created_at.desc())
            )
            .scalars()
            .all()
        )
        return [_entry_from_row(row) for row in rows]

    def list_by_status(self, statuses: list[str]) -> list[PendingEntry]:
        rows = (
            self.db.execute(
                select(PendingReceipt)
                .where(PendingReceipt.status.in_(statuses))
                .order_by(PendingReceipt.review_requested_at.asc(), PendingReceipt.created_at.asc())
            )
            .scalars()
            .all()
        )
        return [_entry_from_row(row) for row in rows]


def _stored_record(entry: ReceiptLedgerEntry) -> Optional[ReceiptRecord]:
    if not entry.receipt_data:
        return None
    try:
        return ReceiptRecord.model_validate(entry.receipt_data)
    except ValidationError:
        logger.error("Ledger row %s holds an unreadable record", entry.id)
        return None


class SqlLedgerSink(LedgerSink):
    def __init__(self, db: Session) -> None:
        self.db = db

    def write(
        self,
        receipt_id: str,
        user_id: str,
        record: ReceiptRecord,
        *,
        file_name: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> LedgerAck:
        existing = self.db.get(ReceiptLedgerEntry, receipt_id)
        if existing is not None:
            logger.info("Ledger already holds receipt %s; acknowledging retry", receipt_id)
            return LedgerAck(
                receipt_id=receipt_id,
                created=False,
                sheets_write_success=bool(existing.sheets_write_success),
                sheet_link=existing.sheet_link,
                stats_applied=bool(existing.stats_applied),
                record=_stored_record(existing),
            )

        extra = extra or {}
        vat = record.vat_breakdown
        entry = ReceiptLedgerEntry(
            id=receipt_id,
            user_id=user_id,
            file_name=file_name,
            vendor_name=record.vendor_name,
            transaction_date=record.transaction_date,
            total_amount=record.total_amount,
            category=record.category.value,
            currency=record.currency,
            entity=record.entity,
            original_currency=record.original_currency,
            original_amount=record.original_amount,
            exchange_rate=record.exchange_rate,
            conversion_date=record.conversion_date,
            currency_conversion_pending=record.currency_conversion_pending,
            supplier_vat_number=record.supplier_vat_number,
            vat_breakdown=vat.model_dump() if vat is not None else None,
            receipt_data=record.model_dump(mode="json"),
            receipt_timestamp=record.timestamp,
            processed_by=record.processed_by.value,
            validation_status=record.validation_status.value,
            has_errors=record.has_errors,
            validation_warnings=extra.get("validation_warnings"),
            approved_by=extra.get("approved_by"),
            approved_at=extra.get("approved_at"),
            admin_notes=extra.get("admin_notes"),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SinkFailure("ledger", f"Ledger write failed for receipt {receipt_id}") from exc
        return LedgerAck(receipt_id=receipt_id, created=True)

    def record_sync(
        self,
        receipt_id: str,
        *,
        sheets_write_success: bool,
        sheet_link: Optional[str],
        sheet_config_id: Optional[str],
    ) -> None:
        try:
            entry = self.db.get(ReceiptLedgerEntry, receipt_id)
            if entry is None:
                return
            entry.sheets_write_success = sheets_write_success
            entry.sync_incomplete = not sheets_write_success
            entry.sheet_link = sheet_link
            entry.sheet_config_id = sheet_config_id
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SinkFailure("ledger", f"Could not record sheet sync for receipt {receipt_id}") from exc

    def stage_stats_applied(self, receipt_id: str) -> None:
        entry = self.db.get(ReceiptLedgerEntry, receipt_id)
        if entry is not None:
            entry.stats_applied = True


def _snapshot(row: Optional[UserStats]) -> StatsSnapshot:
    if row is None:
        return StatsSnapshot()
    return StatsSnapshot(
        total_receipts=row.total_receipts or 0,
        total_amount=float(row.total_amount or 0.0),
        pending_receipts=row.pending_receipts or 0,
        last_receipt_processed=row.last_receipt_processed,
        last_receipt_at=row.last_receipt_at,
    )


class SqlStatsStore(StatsStore):
    """Optimistic read-modify-write on ``user_stats`` guarded by its version column."""

    def __init__(self, db: Session, *, max_retries: int = 5, backoff_seconds: float = 0.01) -> None:
        self.db = db
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds

    def _load(self, user_id: str) -> Optional[UserStats]:
        return self.db.execute(
            select(UserStats)
            .where(UserStats.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get(self, user_id: str) -> StatsSnapshot:
        return _snapshot(self._load(user_id))

    def transact(
        self,
        user_id: str,
        fn: Callable[[StatsSnapshot], StatsSnapshot],
        *,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> StatsSnapshot:
        for attempt in range(1, self.max_retries + 1):
            try:
                row = self._load(user_id)
                updated = fn(_snapshot(row))
                if row is None:
                    row = UserStats(user_id=user_id)
                    self.db.add(row)
                row.total_receipts = updated.total_receipts
                row.total_amount = updated.total_amount
                row.pending_receipts = updated.pending_receipts
                row.last_receipt_processed = updated.last_receipt_processed
                row.last_receipt_at = updated.last_receipt_at
                if before_commit is not None:
                    before_commit()
                self.db.commit()
                return updated
            except (StaleDataError, IntegrityError, OperationalError) as exc:
                self.db.rollback()
                logger.warning(
                    "Stats conflict for user %s (attempt %s/%s): %s",
                    user_id,
                    attempt,
                    self.max_retries,
                    exc.__class__.__name__,
                )
                if attempt == self.max_retries:
                    raise SinkFailure(
                        "stats",
                        f"Statistics update for user {user_id} kept conflicting",
                    ) from exc
                time.sleep(self.backoff_seconds * attempt)
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise SinkFailure("stats", f"Statistics update for user {user_id} failed") from exc
        raise SinkFailure("stats", f"Statistics update for user {user_id} did not run")


class SqlRejectedStore(RejectedStore):
    def __init__(self, db: Session) -> None:
        self.db = db

    def store(
        self,
        entry: PendingEntry,
        *,
        rejected_by: str,
        rejected_at: datetime,
        notes: str,
    ) -> bool:
        if self.db.get(RejectedReceipt, entry.id) is not None:
            return False
        self.db.add(
            RejectedReceipt(
                id=entry.id,
                user_id=entry.user_id,
                file_name=entry.file_name,
                status="rejected",
                receipt_data=entry.receipt_data,
                validation_errors=entry.validation_errors,
                validation_warnings=entry.validation_warnings,
                review_requested_at=entry.review_requested_at,
                original_created_at=entry.created_at,
                rejected_by=rejected_by,
                rejected_at=rejected_at or now_utc(self.db),
                admin_notes=notes,
            )
        )
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SinkFailure("rejected", f"Could not store rejected receipt {entry.id}") from exc
        return True
