import logging

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user
from app.core.dependencies import get_db, get_finalizer, get_ingestor
from app.schemas.receipt import (
    FinalizationOutcome,
    FinalizeRequest,
    PendingReceiptListResponse,
    PendingReceiptOut,
    UserStatsOut,
)
from app.services.finalization import ReceiptFinalizer
from app.services.ingestion import ReceiptIngestor
from app.services.sinks import PendingEntry, SqlPendingQueue, SqlStatsStore

router = APIRouter()
logger = logging.getLogger(__name__)


def _entry_to_out(entry: PendingEntry) -> PendingReceiptOut:
    return PendingReceiptOut(
        id=entry.id,
        user_id=entry.user_id,
        file_name=entry.file_name,
        status=entry.status,
        receipt_data=entry.receipt_data,
        validation_errors=entry.validation_errors,
        validation_warnings=entry.validation_warnings,
        review_requested_at=entry.review_requested_at,
        created_at=entry.created_at,
    )


@router.post("/receipts/upload", response_model=PendingReceiptOut, status_code=201)
async def upload_receipt(
    file: UploadFile = File(...),
    current_user: CurrentUser = Depends(get_current_user),
    ingestor: ReceiptIngestor = Depends(get_ingestor),
):
    content = await file.read()
    result = await ingestor.ingest(current_user.id, file.filename, content)
    return _entry_to_out(result.entry)


@router.get("/receipts/pending", response_model=PendingReceiptListResponse)
def list_pending_receipts(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entries = SqlPendingQueue(db).list_for_user(current_user.id)
    return PendingReceiptListResponse(items=[_entry_to_out(entry) for entry in entries])


@router.post("/receipts/{receipt_id}/finalize", response_model=FinalizationOutcome)
def finalize_receipt(
    receipt_id: str,
    payload: FinalizeRequest | None = None,
    current_user: CurrentUser = Depends(get_current_user),
    finalizer: ReceiptFinalizer = Depends(get_finalizer),
):
    corrections = payload.corrections if payload else None
    return finalizer.finalize(receipt_id, current_user, corrections)


@router.get("/receipts/stats", response_model=UserStatsOut)
def get_my_stats(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    snapshot = SqlStatsStore(db).get(current_user.id)
    return UserStatsOut(
        user_id=current_user.id,
        total_receipts=snapshot.total_receipts,
        total_amount=snapshot.total_amount,
        pending_receipts=snapshot.pending_receipts,
        last_receipt_processed=snapshot.last_receipt_processed,
        last_receipt_at=snapshot.last_receipt_at,
    )
