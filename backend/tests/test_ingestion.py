import pytest

from app.core.errors import ExtractionError, InvalidInput
from app.models.receipt import AuditLog, EventLog
from app.schemas.receipt import Category, PendingStatus
from app.services.ai.common.providers import BaseProvider, MockProvider, ProviderResult
from app.services.ai.common.router import ResolvedConfig
from app.services.ai.receipt_extract.service import draft_from_extraction, extract_receipt, guess_mime_type
from app.services.currency import CurrencyNormalizer
from app.services.ingestion import ReceiptIngestor
from app.services.sheet_routing import SqlRouteResolver
from app.services.sinks import SqlPendingQueue, SqlStatsStore
from tests.conftest import FakeRateSource

IMAGE = b"\xff\xd8\xff\xe0fake-jpeg"


class _TextProvider(BaseProvider):
    name = "text"

    def __init__(self, text):
        self.text = text

    async def generate(self, prompt, **kwargs):
        return ProviderResult(raw_text=self.text, model="text-1", provider=self.name)


def _config(provider):
    return ResolvedConfig(provider=provider, model="", temperature=0.2, max_tokens=256, timeout_seconds=5)


def _ingestor(db, provider=None, rates=None, max_upload_bytes=1024):
    return ReceiptIngestor(
        db,
        pending=SqlPendingQueue(db),
        stats=SqlStatsStore(db),
        routes=SqlRouteResolver(db),
        normalizer=CurrencyNormalizer(db, FakeRateSource(rates), base_currency="GBP"),
        max_upload_bytes=max_upload_bytes,
        extraction_config=_config(provider or MockProvider()),
    )


@pytest.mark.asyncio
async def test_ingest_queues_draft_and_counts_pending(db_session):
    result = await _ingestor(db_session).ingest("u-1", "till.jpg", IMAGE)

    entry = result.entry
    assert entry.status == PendingStatus.PENDING_REVIEW.value
    assert entry.file_name == "till.jpg"
    assert entry.receipt_data["vendor_name"] == "Mock Hardware Ltd"
    assert entry.receipt_data["currency"] == "GBP"
    assert entry.receipt_data["exchange_rate"] == 1.0
    assert entry.receipt_data["entity"] == "Unassigned"
    assert result.extraction.confidence == 1.0
    assert result.conversion_pending is False

    assert SqlStatsStore(db_session).get("u-1").pending_receipts == 1
    audit = db_session.query(AuditLog).filter(AuditLog.entity_id == entry.id).one()
    assert audit.action == "AI_RECEIPT_EXTRACTED"
    assert audit.audit_meta["provider"] == "mock"
    assert "image_hash" in audit.audit_meta
    assert db_session.query(EventLog).filter(EventLog.receipt_id == entry.id).count() == 1


@pytest.mark.asyncio
async def test_foreign_currency_is_converted_at_ingest(db_session):
    provider = MockProvider({"vendor_name": "Corner Shop", "total": "100.00", "currency": "usd", "date": "2024-03-01"})

    result = await _ingestor(db_session, provider, {("USD", "GBP"): 0.79}).ingest("u-1", "a.png", IMAGE)

    data = result.entry.receipt_data
    assert data["total_amount"] == 79.0
    assert data["currency"] == "GBP"
    assert data["original_currency"] == "USD"
    assert data["original_amount"] == 100.0
    assert data["exchange_rate"] == 0.79


@pytest.mark.asyncio
async def test_rate_outage_queues_unconverted_draft(db_session):
    provider = MockProvider({"vendor_name": "Corner Shop", "total_amount": 100, "currency": "USD"})

    result = await _ingestor(db_session, provider).ingest("u-1", "a.png", IMAGE)

    data = result.entry.receipt_data
    assert result.conversion_pending is True
    assert data["total_amount"] == 100.0
    assert data["currency"] == "USD"
    assert data["original_amount"] == 100.0
    assert "exchange_rate" not in data


@pytest.mark.asyncio
async def test_empty_or_oversized_upload_is_rejected(db_session):
    ingestor = _ingestor(db_session, max_upload_bytes=8)
    with pytest.raises(InvalidInput):
        await ingestor.ingest("u-1", "a.jpg", b"")
    with pytest.raises(InvalidInput):
        await ingestor.ingest("u-1", "a.jpg", b"0123456789")
    assert SqlPendingQueue(db_session).list_for_user("u-1") == []


@pytest.mark.asyncio
async def test_unparseable_model_output_is_an_extraction_error(db_session):
    with pytest.raises(ExtractionError):
        await _ingestor(db_session, _TextProvider("I could not read this receipt.")).ingest("u-1", "a.jpg", IMAGE)
    assert SqlPendingQueue(db_session).list_for_user("u-1") == []


@pytest.mark.asyncio
async def test_extract_receipt_reads_fenced_json():
    text = '```json\n{"vendorName": "Bolt Ltd", "transactionDate": "2024-02-02", "totalAmount": "£1,234.50"}\n```'
    extraction, provider_result = await extract_receipt(IMAGE, config=_config(_TextProvider(text)))

    assert extraction.draft.vendor_name == "Bolt Ltd"
    assert extraction.draft.total_amount == 1234.5
    assert extraction.draft.currency is None
    assert extraction.confidence == 0.75
    assert extraction.model_version == "text:text-1"
    assert provider_result.provider == "text"


def test_draft_mapping_defaults_unknown_category_and_drops_empty_vat():
    draft = draft_from_extraction(
        {"vendor_name": " Acme ", "category": "Groceries", "vat_breakdown": {"subtotal": None}},
        timestamp="2024-03-01T00:00:00Z",
    )
    assert draft.vendor_name == "Acme"
    assert draft.category == Category.OTHER
    assert draft.vat_breakdown is None
    assert draft.total_amount is None
    assert draft.timestamp == "2024-03-01T00:00:00Z"


def test_negative_extracted_amount_is_refused():
    with pytest.raises(ExtractionError):
        draft_from_extraction({"vendor_name": "Acme", "total_amount": -5})


@pytest.mark.parametrize(
    "file_name, expected",
    [("scan.PDF", "application/pdf"), ("photo.png", "image/png"), ("noext", "image/jpeg"), (None, "image/jpeg")],
)
def test_guess_mime_type(file_name, expected):
    assert guess_mime_type(file_name) == expected
