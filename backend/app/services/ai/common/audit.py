"""Audit trail for extraction runs, written to ``audit_logs``."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.services.event_log import create_audit_log

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)

EXTRACTION_ACTION = "AI_RECEIPT_EXTRACTED"


def _sha256(value: bytes | str) -> str:
    data = value.encode() if isinstance(value, str) else value
    return hashlib.sha256(data).hexdigest()


def log_extraction_run(
    db: Session,
    *,
    receipt_id: str,
    provider_result: ProviderResult,
    prompt_text: str,
    image_bytes: bytes,
    parsed_output: dict[str, Any] | None,
    actor_id: str | None = None,
) -> None:
    """Stage an audit entry for one extraction call.

    Prompt, response and image are stored as hashes only; the parsed
    fields are the draft already kept in ``pending_receipts``.
    """
    metadata: dict[str, Any] = {
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_hash": _sha256(prompt_text),
        "response_hash": _sha256(provider_result.raw_text),
        "image_hash": _sha256(image_bytes),
    }

    create_audit_log(
        db,
        entity_type="receipt",
        entity_id=receipt_id,
        action=EXTRACTION_ACTION,
        old_value=None,
        new_value=parsed_output,
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata=metadata,
    )
