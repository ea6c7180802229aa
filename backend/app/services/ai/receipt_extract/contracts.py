"""Receipt extraction scope contracts."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from app.schemas.receipt import ReceiptDraft


class ReceiptExtractionResult(BaseModel):
    """A best-effort draft. Nothing here is trusted until finalization validates it."""

    draft: ReceiptDraft
    confidence: float = 0.0
    model_version: str = ""
    raw_extraction: dict[str, Any] = Field(default_factory=dict)
