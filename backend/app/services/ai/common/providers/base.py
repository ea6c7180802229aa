"""Abstract base for receipt-vision providers."""

from __future__ import annotations

import abc
import base64
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ImagePart:
    """Raw document bytes sent alongside the prompt."""

    data: bytes
    mime_type: str = "image/jpeg"

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send *prompt* (and the optional *image*) and return a ``ProviderResult``."""
