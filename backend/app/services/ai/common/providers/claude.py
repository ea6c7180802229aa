"""Anthropic / Claude provider with image and PDF input."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from .base import BaseProvider, ImagePart, ProviderResult

logger = logging.getLogger(__name__)

API_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MODEL = "claude-3-5-haiku-20241022"
IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


def _document_block(image: ImagePart) -> dict[str, Any]:
    source = {"type": "base64", "media_type": image.mime_type, "data": image.as_base64()}
    if image.mime_type == "application/pdf":
        return {"type": "document", "source": source}
    if image.mime_type not in IMAGE_MIME_TYPES:
        source["media_type"] = "image/jpeg"
    return {"type": "image", "source": source}


class ClaudeProvider(BaseProvider):
    name = "claude"

    def __init__(self, api_key: str, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._api_key = api_key
        self._transport = transport

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
        model = model or DEFAULT_MODEL
        content: list[dict[str, Any]] = []
        if image is not None:
            content.append(_document_block(image))
        content.append({"type": "text", "text": prompt})

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            resp = await client.post(
                API_URL,
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json={
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "messages": [{"role": "user", "content": content}],
                },
            )
            resp.raise_for_status()
            data = resp.json()

        return self._parse_response(data, model, (time.monotonic() - t0) * 1000)

    def _parse_response(self, data: dict[str, Any], model: str, elapsed_ms: float) -> ProviderResult:
        if data.get("stop_reason") == "max_tokens":
            logger.warning("Claude response truncated at max_tokens (model=%s)", model)
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage") or {}
        return ProviderResult(
            raw_text=text,
            model=data.get("model") or model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed_ms, 2),
        )
