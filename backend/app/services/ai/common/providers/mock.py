"""Mock provider: a fixed, plausible receipt for tests and fallback."""

from __future__ import annotations

import json
import time
from datetime import date
from typing import Optional

from .base import BaseProvider, ImagePart, ProviderResult


class MockProvider(BaseProvider):
    name = "mock"

    def __init__(self, payload: Optional[dict] = None) -> None:
        self._payload = payload

    def _receipt(self) -> dict:
        if self._payload is not None:
            return self._payload
        return {
            "vendor_name": "Mock Hardware Ltd",
            "transaction_date": date.today().isoformat(),
            "total_amount": 42.5,
            "currency": "GBP",
            "category": "Maintenance",
            "supplier_vat_number": "GB123456789",
            "vat_breakdown": {"subtotal": 35.42, "vat_amount": 7.08, "vat_rate": 20},
        }

    async def generate(
        self,
        prompt: str,
        *,
        image: Optional[ImagePart] = None,
        model: str = "",
        temperature: float = 0.2,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        text = json.dumps(self._receipt())
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
