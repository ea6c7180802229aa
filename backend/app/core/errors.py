"""Fault kinds raised by the receipt pipeline.

Business-rule problems (validation errors and warnings) are never raised;
they travel inside ``FinalizationOutcome``. Everything here is a fault the
caller has to branch on, by class or by ``kind``, never by message text.
"""

from __future__ import annotations

from typing import Any, Optional


class ReceiptError(Exception):
    kind = "RECEIPT_ERROR"
    status_code = 500

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class NotFound(ReceiptError):
    kind = "NOT_FOUND"
    status_code = 404


class Unauthenticated(ReceiptError):
    kind = "UNAUTHENTICATED"
    status_code = 401


class Forbidden(ReceiptError):
    kind = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Access denied", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class CorruptRecord(ReceiptError):
    kind = "CORRUPT_RECORD"
    status_code = 500


class InvalidInput(ReceiptError):
    kind = "INVALID_INPUT"
    status_code = 400


class SinkFailure(ReceiptError):
    kind = "SINK_FAILURE"
    status_code = 502

    def __init__(self, sink: str, message: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.sink = sink


class ExtractionError(ReceiptError):
    kind = "EXTRACTION_FAILED"
    status_code = 502
