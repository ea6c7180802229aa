from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings


def _is_sqlite(db: Optional[Session]) -> bool:
    bind = getattr(db, "bind", None) if db is not None else None
    dialect = getattr(bind, "dialect", None)
    if dialect is not None:
        return getattr(dialect, "name", "") == "sqlite"
    return (get_settings().database_url or "").startswith("sqlite")


def now_utc(db: Optional[Session] = None) -> datetime:
    # SQLite stores timezone-aware datetimes as naive values; comparing the two crashes.
    if _is_sqlite(db):
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
