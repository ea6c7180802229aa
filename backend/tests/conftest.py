from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import CurrentUser
from app.core.config import get_settings
from app.core.errors import SinkFailure
from app.models.receipt import Base
from app.schemas.receipt import PendingStatus, TenantSheetRoute
from app.services.currency import RateSource
from app.services.finalization import ReceiptFinalizer
from app.services.sheet_routing import RouteResolver
from app.services.sheets import MAIN_HEADERS
from app.services.sinks import (
    LedgerAck,
    LedgerSink,
    PendingEntry,
    PendingQueue,
    RejectedStore,
    SpreadsheetSink,
    StatsSnapshot,
    StatsStore,
)
from app.utils.alerting import alert_tracker

OWNER_ID = "00000000-0000-0000-0000-000000000002"
OTHER_USER_ID = "00000000-0000-0000-0000-000000000003"
ADMIN_ID = "00000000-0000-0000-0000-000000000001"
FIXED_TIMESTAMP = "2024-03-01T10:00:00Z"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with a different JWT secret) across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_alert_tracker():
    alert_tracker.reset()
    yield
    alert_tracker.reset()


# --- Database ---


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


# --- In-memory sinks ---


class FakePendingQueue(PendingQueue):
    def __init__(self) -> None:
        self.entries: dict[str, PendingEntry] = {}
        self.removed: list[str] = []
        self.fail_remove = False

    def get(self, receipt_id):
        return self.entries.get(receipt_id)

    def add(self, entry):
        self.entries[entry.id] = entry
        return entry

    def mark_needs_review(self, receipt_id, *, errors, warnings, requested_at):
        entry = self.entries[receipt_id]
        entry.status = PendingStatus.NEEDS_ADMIN_REVIEW.value
        entry.validation_errors = list(errors)
        entry.validation_warnings = list(warnings)
        entry.review_requested_at = requested_at

    def remove(self, receipt_id):
        if self.fail_remove:
            raise RuntimeError("queue unavailable")
        self.removed.append(receipt_id)
        return self.entries.pop(receipt_id, None) is not None


class FakeLedger(LedgerSink):
    def __init__(self) -> None:
        self.rows: dict[str, dict] = {}
        self.fail = False
        self.writes = 0

    def write(self, receipt_id, user_id, record, *, file_name=None, extra=None):
        self.writes += 1
        if self.fail:
            raise SinkFailure("ledger", "ledger offline")
        existing = self.rows.get(receipt_id)
        if existing is not None:
            return LedgerAck(
                receipt_id=receipt_id,
                created=False,
                sheets_write_success=existing["sheets_write_success"],
                sheet_link=existing["sheet_link"],
                stats_applied=existing["stats_applied"],
                record=existing["record"],
            )
        self.rows[receipt_id] = {
            "user_id": user_id,
            "record": record,
            "file_name": file_name,
            "extra": dict(extra or {}),
            "sheets_write_success": False,
            "sheet_link": None,
            "sheet_config_id": None,
            "stats_applied": False,
        }
        return LedgerAck(receipt_id=receipt_id, created=True)

    def record_sync(self, receipt_id, *, sheets_write_success, sheet_link, sheet_config_id):
        row = self.rows[receipt_id]
        row.update(
            sheets_write_success=sheets_write_success,
            sheet_link=sheet_link,
            sheet_config_id=sheet_config_id,
        )

    def stage_stats_applied(self, receipt_id):
        self.rows[receipt_id]["stats_applied"] = True


class FakeStats(StatsStore):
    def __init__(self) -> None:
        self.snapshots: dict[str, StatsSnapshot] = {}
        self.fail = False

    def transact(self, user_id, fn, *, before_commit=None):
        if self.fail:
            raise SinkFailure("stats", "stats conflict")
        updated = fn(self.get(user_id))
        if before_commit is not None:
            before_commit()
        self.snapshots[user_id] = updated
        return updated

    def get(self, user_id):
        return self.snapshots.get(user_id, StatsSnapshot())


class FakeRoutes(RouteResolver):
    def __init__(self, route: Optional[TenantSheetRoute] = None) -> None:
        self.route = route
        self.used: list[TenantSheetRoute] = []

    def resolve_route(self, user_id):
        return self.route

    def record_use(self, route):
        self.used.append(route)


class FakeRejected(RejectedStore):
    def __init__(self) -> None:
        self.stored: dict[str, dict] = {}

    def store(self, entry, *, rejected_by, rejected_at, notes):
        if entry.id in self.stored:
            return False
        self.stored[entry.id] = {"entry": entry, "rejected_by": rejected_by, "notes": notes}
        return True


class FakeSpreadsheet(SpreadsheetSink):
    def __init__(self) -> None:
        self.rows: list = []
        self.accountant_rows: list = []
        self.fail_main = False
        self.fail_accountant = False
        self.headers: list[str] = list(MAIN_HEADERS)

    def append_row(self, route, record):
        if self.fail_main:
            raise SinkFailure("spreadsheet", "quota exceeded")
        self.rows.append((route.sheet_id, record))

    def append_accountant_row(self, route, record):
        if self.fail_accountant:
            raise SinkFailure("accountant_tab", "tab locked")
        self.accountant_rows.append((route.sheet_id, record))

    def validate_sheet_headers(self, sheet_id, tab_name=None):
        present = {header.lower() for header in self.headers}
        missing = [header for header in MAIN_HEADERS if header.lower() not in present]
        return {"valid": not missing, "missing": missing, "actual": list(self.headers)}


class FakeRateSource(RateSource):
    name = "fake"

    def __init__(self, rates: Optional[dict] = None) -> None:
        self.rates = dict(rates or {})
        self.calls: list[tuple[str, str]] = []

    def get_rate(self, from_code, to_code):
        self.calls.append((from_code, to_code))
        return self.rates.get((from_code, to_code))


class Sinks:
    def __init__(self) -> None:
        self.pending = FakePendingQueue()
        self.ledger = FakeLedger()
        self.stats = FakeStats()
        self.routes = FakeRoutes(TenantSheetRoute(sheet_id="sheet-main", config_id="cfg-1", source="default"))
        self.rejected = FakeRejected()
        self.spreadsheet = FakeSpreadsheet()

    def finalizer(self, normalizer=None) -> ReceiptFinalizer:
        return ReceiptFinalizer(
            None,
            pending=self.pending,
            ledger=self.ledger,
            stats=self.stats,
            routes=self.routes,
            rejected=self.rejected,
            normalizer=normalizer,
            spreadsheet=self.spreadsheet,
            base_currency="GBP",
            clock=lambda: FIXED_TIMESTAMP,
        )

    def queue(self, receipt_id: str = "r-1", *, user_id: str = OWNER_ID, **data) -> PendingEntry:
        receipt_data = {
            "vendor_name": "Acme Supplies",
            "transaction_date": "2024-03-01",
            "total_amount": 100.0,
            "category": "Supplies",
            "currency": "GBP",
            "original_currency": "GBP",
            "original_amount": 100.0,
            "exchange_rate": 1.0,
            "timestamp": FIXED_TIMESTAMP,
        }
        receipt_data.update(data)
        entry = PendingEntry(id=receipt_id, user_id=user_id, receipt_data=receipt_data, file_name="receipt.jpg")
        self.pending.add(entry)
        self.stats.snapshots[user_id] = self.stats.get(user_id).with_pending_delta(1)
        return entry


@pytest.fixture
def sinks():
    return Sinks()


@pytest.fixture
def owner():
    return CurrentUser(id=OWNER_ID, role="USER")


@pytest.fixture
def other_user():
    return CurrentUser(id=OTHER_USER_ID, role="USER")


@pytest.fixture
def admin():
    return CurrentUser(id=ADMIN_ID, role="ADMIN")
