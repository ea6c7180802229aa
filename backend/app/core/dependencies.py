from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings
from app.services.currency import CurrencyNormalizer, FrankfurterRateSource, RateSource
from app.services.finalization import ReceiptFinalizer
from app.services.ingestion import ReceiptIngestor
from app.services.sheet_routing import SqlRouteResolver
from app.services.sheets import GoogleSheetsSink
from app.services.sinks import (
    SpreadsheetSink,
    SqlLedgerSink,
    SqlPendingQueue,
    SqlRejectedStore,
    SqlStatsStore,
)

settings = get_settings()

engine = None
if settings.database_url:
    connect_args: dict[str, object] = {}

    if settings.database_url.startswith("sqlite"):
        # Sync handlers run in FastAPI's threadpool, so the connection is shared across threads.
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=connect_args)

    if settings.database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# --- Service handles ---
# Long-lived clients (rate source, spreadsheet sink) are built once at startup
# and kept on app.state; per-request services wrap them around the request session.


def get_rate_source(request: Request) -> RateSource:
    source = getattr(request.app.state, "rate_source", None)
    if source is None:
        source = build_rate_source()
        request.app.state.rate_source = source
    return source


def get_spreadsheet_sink(request: Request) -> Optional[SpreadsheetSink]:
    return getattr(request.app.state, "spreadsheet_sink", None)


def build_rate_source() -> RateSource:
    settings = get_settings()
    return FrankfurterRateSource(settings.fx_api_url, timeout_seconds=settings.fx_timeout_seconds)


def build_spreadsheet_sink() -> Optional[SpreadsheetSink]:
    settings = get_settings()
    if not settings.enable_sheets_sync:
        return None
    return GoogleSheetsSink(
        settings.google_sheets_service_account_key,
        base_currency=settings.base_currency,
        default_accountant_tab=settings.accountant_tab_name,
    )


def _normalizer(db: Session, rate_source: RateSource) -> CurrencyNormalizer:
    settings = get_settings()
    return CurrencyNormalizer(
        db,
        rate_source,
        base_currency=settings.base_currency,
        cache_ttl_hours=settings.fx_cache_ttl_hours,
    )


def get_finalizer(
    request: Request,
    db: Session = Depends(get_db),
) -> ReceiptFinalizer:
    settings = get_settings()
    return ReceiptFinalizer(
        db,
        pending=SqlPendingQueue(db),
        ledger=SqlLedgerSink(db),
        stats=SqlStatsStore(db, max_retries=settings.stats_max_retries),
        routes=SqlRouteResolver(db, fallback_sheet_id=settings.google_sheet_id),
        rejected=SqlRejectedStore(db),
        normalizer=_normalizer(db, get_rate_source(request)),
        spreadsheet=get_spreadsheet_sink(request),
        base_currency=settings.base_currency,
    )


def get_ingestor(
    request: Request,
    db: Session = Depends(get_db),
) -> ReceiptIngestor:
    settings = get_settings()
    return ReceiptIngestor(
        db,
        pending=SqlPendingQueue(db),
        stats=SqlStatsStore(db, max_retries=settings.stats_max_retries),
        routes=SqlRouteResolver(db, fallback_sheet_id=settings.google_sheet_id),
        normalizer=_normalizer(db, get_rate_source(request)),
        max_upload_bytes=settings.max_upload_bytes,
    )
