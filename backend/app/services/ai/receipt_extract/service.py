"""Receipt image -> structured draft via a multimodal provider.

The output is a proposal only. Missing fields are left empty so that
finalization can flag them instead of inventing values.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

from pydantic import ValidationError

from app.core.errors import ExtractionError
from app.schemas.receipt import Category, ReceiptDraft, VatBreakdown
from app.services.ai.common.json_tools import extract_json_object
from app.services.ai.common.providers import ImagePart, ProviderResult
from app.services.ai.common.router import ResolvedConfig, resolve
from app.services.ai.receipt_extract.contracts import ReceiptExtractionResult
from app.utils.clock import iso_now

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "pdf": "application/pdf",
}
DEFAULT_MIME_TYPE = "image/jpeg"

RECEIPT_EXTRACT_PROMPT = f"""Analyze this receipt image and extract the following information as JSON:
{{
  "vendor_name": "The name of the store or business",
  "transaction_date": "The purchase date in YYYY-MM-DD format",
  "total_amount": The final total including tax (as a number, no currency symbols),
  "currency": "The ISO currency code (e.g. USD, GBP, EUR) if visible",
  "category": "One of: {', '.join(Category.values())}",
  "supplier_vat_number": "The supplier's VAT registration number if visible (optional)",
  "vat_breakdown": {{
    "subtotal": Amount before VAT as a number (optional),
    "vat_amount": VAT amount as a number (optional),
    "vat_rate": VAT rate as a percentage, e.g. 20 (optional)
  }}
}}

Categories:
- "Maintenance": tools, hardware, repairs, equipment maintenance
- "Cleaning Supplies": cleaning products, detergents, paper towels
- "Utilities": electricity, water, gas, internet, phone bills
- "Supplies": office supplies, general business supplies
- "Other": anything that does not fit the above

Omit vat_breakdown entirely if VAT details are not clearly visible.
Extract only information that is clearly visible on the receipt.
Return ONLY valid JSON, no other text."""

# Providers sometimes answer in camelCase or with short names.
_ALIASES = {
    "vendor_name": ("vendor_name", "vendorName", "vendor"),
    "transaction_date": ("transaction_date", "transactionDate", "date"),
    "total_amount": ("total_amount", "totalAmount", "total", "amount"),
    "currency": ("currency",),
    "category": ("category",),
    "supplier_vat_number": ("supplier_vat_number", "supplierVatNumber", "vat_number"),
    "vat_breakdown": ("vat_breakdown", "vatBreakdown"),
}

_CONFIDENCE_FIELDS = ("vendor_name", "transaction_date", "total_amount", "currency")


def guess_mime_type(file_name: Optional[str]) -> str:
    extension = (file_name or "").rsplit(".", 1)[-1].lower() if "." in (file_name or "") else ""
    return MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)


def _pick(parsed: dict[str, Any], field: str) -> Any:
    for key in _ALIASES[field]:
        value = parsed.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        for symbol in ("£", "$", "€"):
            value = value.replace(symbol, "")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _vat_breakdown(value: Any) -> Optional[VatBreakdown]:
    if not isinstance(value, dict):
        return None
    subtotal = _to_number(value.get("subtotal"))
    vat_amount = _to_number(value.get("vat_amount", value.get("vatAmount")))
    vat_rate = _to_number(value.get("vat_rate", value.get("vatRate")))
    if subtotal is None and vat_amount is None and vat_rate is None:
        return None
    return VatBreakdown(subtotal=subtotal, vat_amount=vat_amount, vat_rate=vat_rate)


def draft_from_extraction(parsed: dict[str, Any], *, timestamp: Optional[str] = None) -> ReceiptDraft:
    """Map provider JSON onto a draft. Unknown categories become Other."""
    amount = _to_number(_pick(parsed, "total_amount"))
    if amount is not None and amount < 0:
        raise ExtractionError(f"Invalid total amount extracted: {amount}")

    vat_number = _pick(parsed, "supplier_vat_number")
    try:
        return ReceiptDraft(
            vendor_name=str(_pick(parsed, "vendor_name") or "").strip(),
            transaction_date=str(_pick(parsed, "transaction_date") or "").strip(),
            total_amount=amount,
            category=_pick(parsed, "category"),
            currency=_pick(parsed, "currency"),
            supplier_vat_number=str(vat_number).strip() if vat_number else None,
            vat_breakdown=_vat_breakdown(_pick(parsed, "vat_breakdown")),
            timestamp=timestamp or iso_now(),
        )
    except ValidationError as exc:
        raise ExtractionError(f"Extraction output could not be mapped to a receipt: {exc}") from exc


def _confidence(draft: ReceiptDraft) -> float:
    filled = sum(1 for field in _CONFIDENCE_FIELDS if getattr(draft, field) not in (None, ""))
    return round(filled / len(_CONFIDENCE_FIELDS), 2)


async def extract_receipt(
    image_bytes: bytes,
    mime_type: str = DEFAULT_MIME_TYPE,
    *,
    config: Optional[ResolvedConfig] = None,
) -> tuple[ReceiptExtractionResult, ProviderResult]:
    """Run the provider over one receipt image.

    Raises ``ExtractionError`` when the provider fails or returns no JSON object.
    """
    if not image_bytes:
        raise ExtractionError("Receipt image is empty")
    config = config or resolve()

    try:
        result = await config.provider.generate(
            RECEIPT_EXTRACT_PROMPT,
            image=ImagePart(data=image_bytes, mime_type=mime_type),
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )
    except Exception as exc:
        logger.exception("Receipt extraction provider %s failed", config.provider.name)
        raise ExtractionError(f"Extraction provider {config.provider.name} failed") from exc

    parsed = extract_json_object(result.raw_text)
    if parsed is None:
        logger.warning("Provider returned no JSON object: %s", result.raw_text[:200])
        raise ExtractionError("Failed to parse receipt data from model response")

    draft = draft_from_extraction(parsed)
    extraction = ReceiptExtractionResult(
        draft=draft,
        confidence=_confidence(draft),
        model_version=f"{result.provider}:{result.model}",
        raw_extraction=parsed,
    )
    return extraction, result
