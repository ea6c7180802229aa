"""Receipt finalization: merge, enforce invariants, validate, route, commit.

User finalization and admin approval run through the same pipeline and
differ only by ``FinalizePolicy``. Commit order is fixed: ledger, then the
best-effort spreadsheet writes, then the stats transaction, then queue
removal. Only a ledger failure aborts the call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser
from app.core.errors import CorruptRecord, Forbidden, InvalidInput, NotFound, SinkFailure
from app.schemas.receipt import (
    UNASSIGNED_ENTITY,
    ActorKind,
    Category,
    FinalizationOutcome,
    FinalizationState,
    ReceiptCorrections,
    ReceiptRecord,
    RejectionOutcome,
    ValidationResult,
    ValidationStatus,
)
from app.services.currency import CurrencyNormalizer
from app.services.event_log import create_audit_log, log_event, record_alert
from app.services.sheet_routing import RouteResolver
from app.services.sinks import (
    LedgerAck,
    LedgerSink,
    PendingEntry,
    PendingQueue,
    RejectedStore,
    SpreadsheetSink,
    StatsStore,
)
from app.services.validation import validate_receipt
from app.utils.clock import iso_now, now_utc

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[FinalizationState, set[FinalizationState]] = {
    FinalizationState.DRAFT: {FinalizationState.MERGING, FinalizationState.REJECTED},
    FinalizationState.MERGING: {FinalizationState.VALIDATING},
    FinalizationState.VALIDATING: {FinalizationState.ACCEPTED, FinalizationState.NEEDS_REVIEW},
    FinalizationState.ACCEPTED: {FinalizationState.COMMITTING},
    FinalizationState.NEEDS_REVIEW: {FinalizationState.ACCEPTED, FinalizationState.REJECTED},
    FinalizationState.COMMITTING: {
        FinalizationState.COMMITTED,
        FinalizationState.PARTIALLY_COMMITTED,
    },
}

REQUIRED_FIELDS = ("vendor_name", "transaction_date", "total_amount", "category", "timestamp")


@dataclass(frozen=True)
class FinalizePolicy:
    actor_kind: ActorKind
    bypass_validation_on_failure: bool
    enforce_ownership: bool


USER_POLICY = FinalizePolicy(
    actor_kind=ActorKind.USER,
    bypass_validation_on_failure=False,
    enforce_ownership=True,
)
ADMIN_POLICY = FinalizePolicy(
    actor_kind=ActorKind.ADMIN,
    bypass_validation_on_failure=True,
    enforce_ownership=False,
)


class _Run:
    """Tracks one pass through the state machine for a single draft."""

    def __init__(self, receipt_id: str) -> None:
        self.receipt_id = receipt_id
        self.state = FinalizationState.DRAFT

    def advance(self, target: FinalizationState) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal finalization transition {self.state} -> {target}")
        logger.debug("receipt=%s %s -> %s", self.receipt_id, self.state, target)
        self.state = target


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ReceiptFinalizer:
    def __init__(
        self,
        db: Optional[Session],
        *,
        pending: PendingQueue,
        ledger: LedgerSink,
        stats: StatsStore,
        routes: RouteResolver,
        rejected: RejectedStore,
        normalizer: Optional[CurrencyNormalizer] = None,
        spreadsheet: Optional[SpreadsheetSink] = None,
        base_currency: str = "GBP",
        clock: Callable[[], str] = iso_now,
    ) -> None:
        self.db = db
        self.pending = pending
        self.ledger = ledger
        self.stats = stats
        self.routes = routes
        self.rejected = rejected
        self.normalizer = normalizer
        self.spreadsheet = spreadsheet
        self.base_currency = base_currency.upper()
        self._clock = clock

    # --- Public entry points ---

    def finalize(
        self,
        receipt_id: str,
        caller: CurrentUser,
        corrections: Optional[ReceiptCorrections] = None,
    ) -> FinalizationOutcome:
        return self._run(receipt_id, caller, corrections, USER_POLICY)

    def admin_approve(
        self,
        receipt_id: str,
        admin: CurrentUser,
        corrections: Optional[ReceiptCorrections] = None,
        notes: Optional[str] = None,
    ) -> FinalizationOutcome:
        if not admin.is_admin:
            raise Forbidden()
        return self._run(receipt_id, admin, corrections, ADMIN_POLICY, notes=notes)

    def admin_reject(self, receipt_id: str, admin: CurrentUser, notes: str) -> RejectionOutcome:
        if not admin.is_admin:
            raise Forbidden()
        if not notes or not notes.strip():
            raise InvalidInput("Admin notes are required for rejection")

        entry = self.pending.get(receipt_id)
        if entry is None:
            raise NotFound(f"Pending receipt {receipt_id} not found")

        run = _Run(receipt_id)
        rejected_at = self._now()
        stored = self.rejected.store(entry, rejected_by=admin.id, rejected_at=rejected_at, notes=notes.strip())

        if not stored:
            logger.info("Receipt %s was already rejected; pending count left as is", receipt_id)
        else:
            try:
                self.stats.transact(entry.user_id, lambda current: current.with_pending_delta(-1))
            except SinkFailure:
                logger.exception("Pending count not decremented for rejected receipt %s", receipt_id)

        self.pending.remove(receipt_id)
        run.advance(FinalizationState.REJECTED)

        self._audit(
            receipt_id,
            "RECEIPT_ADMIN_REJECTED",
            actor_id=admin.id,
            old_value={"status": entry.status},
            new_value={"status": "rejected"},
            metadata={"owner_id": entry.user_id, "notes": notes.strip()},
        )
        self._event(
            "info",
            "adminRejectReceipt",
            f"Receipt rejected by admin: {receipt_id}",
            {"admin_id": admin.id, "reason": notes.strip()},
            user_id=entry.user_id,
            receipt_id=receipt_id,
        )
        return RejectionOutcome(receipt_id=receipt_id)

    # --- Pipeline ---

    def _run(
        self,
        receipt_id: str,
        caller: CurrentUser,
        corrections: Optional[ReceiptCorrections],
        policy: FinalizePolicy,
        *,
        notes: Optional[str] = None,
    ) -> FinalizationOutcome:
        run = _Run(receipt_id)
        entry = self.pending.get(receipt_id)
        if entry is None:
            raise NotFound(f"Pending receipt {receipt_id} not found")
        if policy.enforce_ownership and not caller.owns(entry.user_id):
            raise Forbidden("You can only finalize your own receipts")

        run.advance(FinalizationState.MERGING)
        merged = self._merge(entry, corrections)
        extra_warnings = self._apply_currency_defaults(receipt_id, merged)
        self._check_required(merged)

        run.advance(FinalizationState.VALIDATING)
        result = validate_receipt(
            vendor_name=merged.get("vendor_name"),
            transaction_date=merged.get("transaction_date"),
            total_amount=merged.get("total_amount"),
            category=merged.get("category"),
            vat_number=merged.get("supplier_vat_number"),
        )
        result.warnings.extend(extra_warnings)

        if not result.is_valid and not policy.bypass_validation_on_failure:
            run.advance(FinalizationState.NEEDS_REVIEW)
            return self._route_to_review(entry, caller, result)

        if result.is_valid:
            status = ValidationStatus.WARNING if result.warnings else ValidationStatus.PASSED
        else:
            logger.warning(
                "Admin %s overriding validation errors for receipt %s: %s",
                caller.id,
                receipt_id,
                result.errors,
            )
            status = ValidationStatus.ADMIN_OVERRIDE
        if result.warnings:
            logger.info("Receipt %s has validation warnings: %s", receipt_id, result.warnings)

        record = self._build_record(merged, policy.actor_kind, status)
        run.advance(FinalizationState.ACCEPTED)

        extra: dict[str, Any] = {"validation_warnings": list(result.warnings)}
        if policy.actor_kind == ActorKind.ADMIN:
            extra.update(approved_by=caller.id, approved_at=self._now(), admin_notes=notes or "")

        run.advance(FinalizationState.COMMITTING)
        return self._commit(run, entry, record, result, extra, caller, policy)

    def _merge(self, entry: PendingEntry, corrections: Optional[ReceiptCorrections]) -> dict[str, Any]:
        if not isinstance(entry.receipt_data, dict):
            logger.critical(
                "Pending receipt %s has no receipt data; the draft is corrupt",
                entry.id,
            )
            record_alert("RECEIPT_CORRUPT_DRAFT", {"receipt_id": entry.id})
            self._event(
                "critical",
                "finalizeReceipt",
                f"Receipt {entry.id} is missing receipt data",
                user_id=entry.user_id,
                receipt_id=entry.id,
            )
            raise CorruptRecord(
                f"Receipt {entry.id} is missing receipt data. The pending receipt may be corrupt."
            )

        merged = dict(entry.receipt_data)
        if corrections is not None:
            merged.update(corrections.as_patch())
        if not merged.get("timestamp"):
            merged["timestamp"] = self._clock()
        return merged

    def _apply_currency_defaults(self, receipt_id: str, merged: dict[str, Any]) -> list[str]:
        """Backfill currency metadata and keep original/total reconcilable. Runs after the merge."""
        warnings: list[str] = []
        base = self.base_currency

        if not merged.get("currency"):
            logger.info("Currency missing on receipt %s, applying %s defaults", receipt_id, base)
            merged["currency"] = base
            merged["original_currency"] = base
            merged["original_amount"] = merged.get("total_amount")
            merged["exchange_rate"] = 1.0
            merged["conversion_date"] = self._clock()
        else:
            merged["currency"] = str(merged["currency"]).strip().upper()

        if merged["currency"] != base and merged.get("exchange_rate") is None:
            warnings.extend(self._retry_conversion(receipt_id, merged))

        rate = merged.get("exchange_rate")
        if rate is None or rate == 1.0:
            merged["original_amount"] = merged.get("total_amount")
            merged["exchange_rate"] = 1.0
            if not merged.get("original_currency"):
                merged["original_currency"] = merged.get("currency") or base
        return warnings

    def _retry_conversion(self, receipt_id: str, merged: dict[str, Any]) -> list[str]:
        amount = merged.get("total_amount")
        source = merged["currency"]
        if not _is_number(amount):
            return []

        conversion = self.normalizer.convert(amount, source, self.base_currency) if self.normalizer else None
        if conversion is not None:
            merged.update(
                total_amount=conversion.converted_amount,
                currency=conversion.base_currency,
                original_currency=conversion.original_currency,
                original_amount=conversion.original_amount,
                exchange_rate=conversion.exchange_rate,
                conversion_date=conversion.conversion_date,
                currency_conversion_pending=False,
            )
            return []

        record_alert("RECEIPT_RATE_UNAVAILABLE", {"receipt_id": receipt_id, "currency": source})
        logger.warning("Rate still unavailable for receipt %s (%s); committing unconverted", receipt_id, source)
        merged["original_currency"] = source
        merged["currency_conversion_pending"] = True
        return [
            f"Currency conversion from {source} to {self.base_currency} is pending. "
            "Amount recorded unconverted."
        ]

    def _check_required(self, merged: dict[str, Any]) -> None:
        missing = []
        for name in REQUIRED_FIELDS:
            value = merged.get(name)
            present = _is_number(value) if name == "total_amount" else bool(value)
            if not present:
                missing.append(name)
        if missing:
            raise InvalidInput(
                "Missing required receipt data fields: " + ", ".join(missing),
                context={"missing": missing},
            )

    def _route_to_review(
        self,
        entry: PendingEntry,
        caller: CurrentUser,
        result: ValidationResult,
    ) -> FinalizationOutcome:
        logger.warning("Receipt validation failed for %s: %s", entry.id, result.errors)
        # Still pending, so the owner's pending count is left alone.
        self.pending.mark_needs_review(
            entry.id,
            errors=list(result.errors),
            warnings=list(result.warnings),
            requested_at=self._now(),
        )
        self._event(
            "warning",
            "finalizeReceipt",
            f"Receipt validation failed for {entry.id}",
            {"errors": result.errors, "warnings": result.warnings},
            user_id=caller.id,
            receipt_id=entry.id,
        )
        return FinalizationOutcome(
            success=False,
            receipt_id=entry.id,
            state=FinalizationState.NEEDS_REVIEW,
            needs_admin_review=True,
            errors=list(result.errors),
            warnings=list(result.warnings),
            message="Receipt requires admin review due to validation errors",
        )

    def _build_record(
        self,
        merged: dict[str, Any],
        actor_kind: ActorKind,
        status: ValidationStatus,
    ) -> ReceiptRecord:
        try:
            return ReceiptRecord(
                vendor_name=str(merged["vendor_name"]).strip(),
                transaction_date=merged["transaction_date"],
                total_amount=float(merged["total_amount"]),
                category=Category.coerce(merged.get("category")),
                timestamp=merged["timestamp"],
                currency=merged["currency"],
                entity=merged.get("entity") or UNASSIGNED_ENTITY,
                original_currency=merged["original_currency"],
                original_amount=float(merged["original_amount"]),
                exchange_rate=float(merged["exchange_rate"]),
                conversion_date=merged.get("conversion_date"),
                supplier_vat_number=merged.get("supplier_vat_number") or None,
                vat_breakdown=merged.get("vat_breakdown"),
                processed_by=actor_kind,
                validation_status=status,
                has_errors=False,
                currency_conversion_pending=bool(merged.get("currency_conversion_pending")),
            )
        except (ValidationError, TypeError, ValueError) as exc:
            raise InvalidInput(f"Receipt data could not be finalized: {exc}") from exc

    # --- Commit ---

    def _commit(
        self,
        run: _Run,
        entry: PendingEntry,
        record: ReceiptRecord,
        result: ValidationResult,
        extra: dict[str, Any],
        caller: CurrentUser,
        policy: FinalizePolicy,
    ) -> FinalizationOutcome:
        ack = self._write_ledger(entry, record, extra)
        if not ack.created and ack.record is not None:
            if ack.record != record:
                logger.warning(
                    "Receipt %s is already in the ledger; retry keeps the stored record and drops new corrections",
                    entry.id,
                )
            record = ack.record

        sheets_ok, sheet_link = ack.sheets_write_success, ack.sheet_link
        if not sheets_ok:
            sheets_ok, sheet_link = self._write_spreadsheets(entry, record)

        stats_ok = ack.stats_applied or self._apply_stats(entry, record)

        removed_ok = True
        if stats_ok:
            try:
                self.pending.remove(entry.id)
            except Exception:
                removed_ok = False
                logger.exception("Could not remove finalized receipt %s from the queue", entry.id)
        else:
            # Left queued so a retry converges on the ledger's stats flag.
            removed_ok = False

        complete = sheets_ok and stats_ok and removed_ok
        run.advance(FinalizationState.COMMITTED if complete else FinalizationState.PARTIALLY_COMMITTED)

        if policy.actor_kind == ActorKind.ADMIN:
            self._audit(
                entry.id,
                "RECEIPT_ADMIN_APPROVED",
                actor_id=caller.id,
                old_value={"status": entry.status, "errors": entry.validation_errors},
                new_value={"validation_status": record.validation_status.value},
                metadata={"owner_id": entry.user_id, "notes": extra.get("admin_notes") or ""},
            )
        self._event(
            "info",
            "adminApproveReceipt" if policy.actor_kind == ActorKind.ADMIN else "finalizeReceipt",
            f"Receipt finalized: {entry.id}",
            {
                "file_name": entry.file_name,
                "validation_status": record.validation_status.value,
                "sheets_write_success": sheets_ok,
            },
            user_id=entry.user_id,
            receipt_id=entry.id,
        )

        if not sheets_ok:
            message = "Receipt saved; spreadsheet sync is incomplete"
        elif not stats_ok:
            message = "Receipt saved; statistics update is pending"
        else:
            message = "Receipt finalized and written to Google Sheets"
        return FinalizationOutcome(
            success=True,
            receipt_id=entry.id,
            state=run.state,
            record=record,
            sheets_write_success=sheets_ok,
            sheet_link=sheet_link,
            needs_admin_review=False,
            errors=list(result.errors) if record.validation_status == ValidationStatus.ADMIN_OVERRIDE else [],
            warnings=list(result.warnings),
            message=message,
        )

    def _write_ledger(self, entry: PendingEntry, record: ReceiptRecord, extra: dict[str, Any]) -> LedgerAck:
        try:
            return self.ledger.write(entry.id, entry.user_id, record, file_name=entry.file_name, extra=extra)
        except Exception as exc:
            logger.exception("Ledger write failed for receipt %s", entry.id)
            record_alert("RECEIPT_LEDGER_WRITE_FAILED", {"receipt_id": entry.id})
            self._event(
                "error",
                "finalizeReceipt",
                f"Ledger write failed for {entry.id}: {exc}",
                user_id=entry.user_id,
                receipt_id=entry.id,
            )
            if isinstance(exc, SinkFailure):
                raise
            raise SinkFailure("ledger", f"Ledger write failed for receipt {entry.id}") from exc

    def _write_spreadsheets(self, entry: PendingEntry, record: ReceiptRecord) -> tuple[bool, Optional[str]]:
        route = None
        sheets_ok = False
        try:
            route = self.routes.resolve_route(entry.user_id)
        except Exception:
            logger.exception("Sheet route lookup failed for user %s", entry.user_id)

        if route is None or self.spreadsheet is None:
            logger.warning("No spreadsheet destination for receipt %s; skipping sheet sync", entry.id)
        else:
            try:
                self.spreadsheet.append_row(route, record)
                sheets_ok = True
            except Exception as exc:
                logger.warning("Failed to write receipt %s to sheet %s: %s", entry.id, route.sheet_id, exc)
                record_alert("RECEIPT_SHEETS_WRITE_FAILED", {"receipt_id": entry.id, "sheet_id": route.sheet_id})

        if sheets_ok:
            try:
                self.spreadsheet.append_accountant_row(route, record)
            except Exception as exc:
                logger.warning("Accountant tab write failed for receipt %s: %s", entry.id, exc)
                record_alert("RECEIPT_ACCOUNTANT_WRITE_FAILED", {"receipt_id": entry.id})
            self.routes.record_use(route)

        sheet_link = route.sheet_link if sheets_ok and route is not None else None
        try:
            self.ledger.record_sync(
                entry.id,
                sheets_write_success=sheets_ok,
                sheet_link=sheet_link,
                sheet_config_id=route.config_id if route is not None else None,
            )
        except Exception:
            logger.exception("Could not record sheet sync status for receipt %s", entry.id)
        return sheets_ok, sheet_link

    def _apply_stats(self, entry: PendingEntry, record: ReceiptRecord) -> bool:
        at = self._now()
        try:
            self.stats.transact(
                entry.user_id,
                lambda current: current.with_finalized(record.total_amount, entry.file_name, at),
                before_commit=lambda: self.ledger.stage_stats_applied(entry.id),
            )
        except Exception:
            logger.exception("Statistics update failed for receipt %s", entry.id)
            record_alert("RECEIPT_STATS_CONFLICT_EXHAUSTED", {"user_id": entry.user_id})
            return False
        return True

    # --- Observability ---

    def _now(self) -> datetime:
        return now_utc(self.db)

    def _event(
        self,
        severity: str,
        function_name: str,
        message: str,
        context: Optional[dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        receipt_id: Optional[str] = None,
    ) -> None:
        if self.db is None:
            return
        log_event(self.db, severity, function_name, message, context, user_id=user_id, receipt_id=receipt_id)

    def _audit(
        self,
        receipt_id: str,
        action: str,
        *,
        actor_id: str,
        old_value: Optional[dict[str, Any]],
        new_value: Optional[dict[str, Any]],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        if self.db is None:
            record_alert(action, metadata)
            return
        try:
            create_audit_log(
                self.db,
                entity_type="receipt",
                entity_id=receipt_id,
                action=action,
                old_value=old_value,
                new_value=new_value,
                actor_type="ADMIN",
                actor_id=actor_id,
                metadata=metadata,
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Audit log write failed for receipt %s", receipt_id)
