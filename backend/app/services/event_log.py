import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.receipt import AuditLog, EventLog
from app.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

PII_REDACTION_FALLBACK_FIELDS = ("email", "phone", "address")
SEVERITIES = ("info", "warning", "error", "critical")

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def _redact(value: Any) -> Any:
    settings = get_settings()
    if not settings.pii_redaction_enabled:
        return value
    configured = {item.lower() for item in settings.pii_redaction_fields}
    return _redact_pii(value, configured or set(PII_REDACTION_FALLBACK_FIELDS))


def log_event(
    db: Session,
    severity: str,
    function_name: str,
    message: str,
    context: Optional[dict[str, Any]] = None,
    *,
    user_id: Optional[str] = None,
    receipt_id: Optional[str] = None,
) -> None:
    """Persist an operational event.

    Commits on its own, so call it only at a transaction boundary. A failure
    here is logged and dropped: the event log is never business state.
    """
    if severity not in SEVERITIES:
        severity = "error"
    logger.log(_LOG_LEVELS[severity], "[%s] %s", function_name, message)
    try:
        db.add(
            EventLog(
                severity=severity,
                function_name=function_name,
                message=message,
                context=_redact(context),
                user_id=user_id,
                receipt_id=receipt_id,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist event log entry for %s", function_name)


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Stage an audit row in the caller's transaction and feed the alert tracker."""
    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=_redact(old_value),
        new_value=_redact(new_value),
        actor_type=actor_type,
        actor_id=actor_id,
        audit_meta=_redact(metadata),
    )
    db.add(log)
    record_alert(action, metadata)


def record_alert(action: str, metadata: Optional[dict[str, Any]] = None) -> None:
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)
