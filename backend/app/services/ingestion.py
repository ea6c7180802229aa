import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import InvalidInput, SinkFailure
from app.schemas.receipt import PendingStatus, ReceiptDraft
from app.services.ai.common.audit import log_extraction_run
from app.services.ai.common.router import ResolvedConfig
from app.services.ai.receipt_extract.contracts import ReceiptExtractionResult
from app.services.ai.receipt_extract.service import RECEIPT_EXTRACT_PROMPT, extract_receipt, guess_mime_type
from app.services.currency import CurrencyNormalizer
from app.services.event_log import log_event, record_alert
from app.services.sheet_routing import RouteResolver
from app.services.sinks import PendingEntry, PendingQueue, StatsStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    entry: PendingEntry
    extraction: ReceiptExtractionResult
    conversion_pending: bool = False


class ReceiptIngestor:
    """Uploaded image -> extracted draft -> ``pending_review`` queue entry."""

    def __init__(
        self,
        db: Session,
        *,
        pending: PendingQueue,
        stats: StatsStore,
        routes: RouteResolver,
        normalizer: CurrencyNormalizer,
        max_upload_bytes: int,
        extraction_config: Optional[ResolvedConfig] = None,
    ) -> None:
        self.db = db
        self.pending = pending
        self.stats = stats
        self.routes = routes
        self.normalizer = normalizer
        self.max_upload_bytes = max_upload_bytes
        self.extraction_config = extraction_config

    def _normalize_currency(self, receipt_id: str, draft: ReceiptDraft) -> tuple[ReceiptDraft, bool]:
        if draft.total_amount is None:
            return draft, False

        conversion = self.normalizer.convert_to_base(draft.total_amount, draft.currency)
        if conversion is None:
            # Finalization retries the conversion and flags the record if it still fails.
            logger.warning(
                "Rate unavailable for receipt %s (%s); keeping original amount",
                receipt_id,
                draft.currency,
            )
            record_alert("RECEIPT_RATE_UNAVAILABLE", {"receipt_id": receipt_id, "currency": draft.currency})
            return (
                draft.model_copy(
                    update={
                        "original_currency": draft.currency,
                        "original_amount": draft.total_amount,
                        "exchange_rate": None,
                    }
                ),
                True,
            )

        return (
            draft.model_copy(
                update={
                    "total_amount": conversion.converted_amount,
                    "currency": conversion.base_currency,
                    "original_currency": conversion.original_currency,
                    "original_amount": conversion.original_amount,
                    "exchange_rate": conversion.exchange_rate,
                    "conversion_date": conversion.conversion_date,
                }
            ),
            False,
        )

    async def ingest(self, user_id: str, file_name: Optional[str], image_bytes: bytes) -> IngestResult:
        if not image_bytes:
            raise InvalidInput("Uploaded file is empty")
        if len(image_bytes) > self.max_upload_bytes:
            raise InvalidInput(
                f"Uploaded file exceeds {self.max_upload_bytes} bytes",
                context={"size": len(image_bytes)},
            )

        receipt_id = str(uuid.uuid4())
        extraction, provider_result = await extract_receipt(
            image_bytes,
            guess_mime_type(file_name),
            config=self.extraction_config,
        )

        draft = extraction.draft.model_copy(update={"entity": self.routes.entity_for(user_id)})
        draft, conversion_pending = self._normalize_currency(receipt_id, draft)

        entry = self.pending.add(
            PendingEntry(
                id=receipt_id,
                user_id=user_id,
                file_name=file_name,
                status=PendingStatus.PENDING_REVIEW.value,
                receipt_data=draft.model_dump(mode="json", exclude_none=True),
            )
        )

        try:
            self.stats.transact(user_id, lambda current: current.with_pending_delta(1))
        except SinkFailure:
            logger.exception("Pending count not incremented for receipt %s", receipt_id)

        try:
            log_extraction_run(
                self.db,
                receipt_id=receipt_id,
                provider_result=provider_result,
                prompt_text=RECEIPT_EXTRACT_PROMPT,
                image_bytes=image_bytes,
                parsed_output=extraction.raw_extraction,
                actor_id=user_id,
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Extraction audit entry failed for receipt %s", receipt_id)

        log_event(
            self.db,
            "info",
            "processReceipt",
            f"Receipt extracted and queued for review: {receipt_id}",
            {"file_name": file_name, "confidence": extraction.confidence},
            user_id=user_id,
            receipt_id=receipt_id,
        )
        return IngestResult(entry=entry, extraction=extraction, conversion_pending=conversion_pending)
