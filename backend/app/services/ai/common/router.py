"""Resolves the provider and model used for receipt extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

EXTRACTION_TEMPERATURE = 0.2


@dataclass(frozen=True)
class ResolvedConfig:
    """Final provider + model + limits for one extraction call."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


def resolve(*, override_provider: str | None = None) -> ResolvedConfig:
    """Pick the provider: explicit override, then ``AI_RECEIPT_PROVIDER``, then mock."""
    settings = get_settings()
    provider_name = (override_provider or settings.ai_receipt_provider or "mock").lower().strip()
    provider = get_provider(provider_name)

    model = settings.ai_receipt_model.strip()
    if provider.name != provider_name and model:
        logger.info("Ignoring model %r for fallback provider %r", model, provider.name)
        model = ""

    return ResolvedConfig(
        provider=provider,
        model=model,
        temperature=EXTRACTION_TEMPERATURE,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
    )
