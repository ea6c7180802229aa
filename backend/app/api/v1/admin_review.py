import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, require_admin
from app.core.config import get_settings
from app.core.dependencies import get_db, get_finalizer, get_spreadsheet_sink
from app.core.errors import SinkFailure
from app.schemas.receipt import (
    AdminApproveRequest,
    AdminRejectRequest,
    ArchiveRequest,
    ArchiveSummary,
    FinalizationOutcome,
    PendingReceiptListResponse,
    PendingStatus,
    RejectionOutcome,
    SheetHeaderCheck,
)
from app.services.archive import archive_ledger_before
from app.services.event_log import log_event
from app.services.finalization import ReceiptFinalizer
from app.services.sinks import SpreadsheetSink, SqlPendingQueue

from .receipts import _entry_to_out

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/admin/receipts/review-queue", response_model=PendingReceiptListResponse)
def review_queue(
    include_pending: bool = Query(False),
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    statuses = [PendingStatus.NEEDS_ADMIN_REVIEW.value]
    if include_pending:
        statuses.append(PendingStatus.PENDING_REVIEW.value)
    entries = SqlPendingQueue(db).list_by_status(statuses)
    return PendingReceiptListResponse(items=[_entry_to_out(entry) for entry in entries])


@router.post("/admin/receipts/{receipt_id}/approve", response_model=FinalizationOutcome)
def approve_receipt(
    receipt_id: str,
    payload: AdminApproveRequest | None = None,
    current_user: CurrentUser = Depends(require_admin),
    finalizer: ReceiptFinalizer = Depends(get_finalizer),
):
    payload = payload or AdminApproveRequest()
    return finalizer.admin_approve(receipt_id, current_user, payload.corrections, payload.notes)


@router.post("/admin/receipts/{receipt_id}/reject", response_model=RejectionOutcome)
def reject_receipt(
    receipt_id: str,
    payload: AdminRejectRequest,
    current_user: CurrentUser = Depends(require_admin),
    finalizer: ReceiptFinalizer = Depends(get_finalizer),
):
    return finalizer.admin_reject(receipt_id, current_user, payload.notes)


@router.post("/admin/receipts/archive", response_model=ArchiveSummary)
def archive_receipts(
    payload: ArchiveRequest,
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    settings = get_settings()
    summary = archive_ledger_before(
        db,
        payload.archive_before,
        archived_by=current_user.id,
        dry_run=payload.dry_run,
        after_id=payload.after_id,
        max_batch_operations=settings.archive_max_batch_operations,
    )
    log_event(
        db,
        "info",
        "archiveReceipts",
        f"Archived {summary.archived} receipts in {summary.batches} batches",
        summary.model_dump(),
        user_id=current_user.id,
    )
    return summary


@router.get("/admin/sheets/{sheet_id}/headers", response_model=SheetHeaderCheck)
def check_sheet_headers(
    sheet_id: str,
    tab_name: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(require_admin),
    spreadsheet: Optional[SpreadsheetSink] = Depends(get_spreadsheet_sink),
):
    if spreadsheet is None:
        raise SinkFailure("spreadsheet", "Spreadsheet sync is disabled")
    result = spreadsheet.validate_sheet_headers(sheet_id, tab_name)
    if not result["valid"]:
        logger.warning("Sheet %s is missing headers: %s", sheet_id, result["missing"])
    return SheetHeaderCheck(sheet_id=sheet_id, **result)
