"""Vision provider lookup.

Only two providers ship: ``mock`` for tests and offline runs, and ``claude``
for real extraction. Anything else, or ``claude`` without a key, resolves
to the mock so ingestion never hard-fails on configuration.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from app.core.config import Settings, get_settings

from .base import BaseProvider, ImagePart, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "ImagePart", "ProviderResult", "MockProvider"]


def _build_claude(settings: Settings) -> Optional[BaseProvider]:
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set, receipt extraction uses mock")
        return None
    from .claude import ClaudeProvider

    return ClaudeProvider(api_key=settings.anthropic_api_key)


_BUILDERS: dict[str, Callable[[Settings], Optional[BaseProvider]]] = {
    "mock": lambda _settings: MockProvider(),
    "claude": _build_claude,
}


def get_provider(provider_name: str) -> BaseProvider:
    settings = get_settings()
    name = (provider_name or "").lower().strip()

    builder = _BUILDERS.get(name)
    if builder is None or name not in settings.ai_allowed_providers:
        logger.warning("Provider %r unavailable, receipt extraction uses mock", name)
        return MockProvider()
    return builder(settings) or MockProvider()
