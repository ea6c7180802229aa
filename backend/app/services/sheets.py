"""Google Sheets sink (gspread, service-account auth)."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Optional

import gspread
from gspread.exceptions import GSpreadException, WorksheetNotFound

from app.core.errors import SinkFailure
from app.schemas.receipt import UNASSIGNED_ENTITY, ReceiptRecord, TenantSheetRoute
from app.services.sinks import SpreadsheetSink

logger = logging.getLogger(__name__)

MAIN_HEADERS = [
    "Vendor Name",
    "Date",
    "Total Amount",
    "Category",
    "Timestamp",
    "Entity",
    "Original Currency",
    "Original Amount",
    "Exchange Rate",
    "Supplier VAT Number",
    "VAT Subtotal",
    "VAT Amount",
    "VAT Rate",
    "Processed By",
    "Validation Status",
    "Has Errors",
]

ACCOUNTANT_HEADERS = [
    "Date",
    "Vendor",
    "Entity",
    "Amount",
    "Currency",
    "VAT Number",
    "VAT Amount",
    "Category",
    "Notes",
]

DEFAULT_ACCOUNTANT_TAB = "Accountant_CSV_Ready"


def _cell(value: Any) -> Any:
    return "" if value is None else value


def build_main_row(record: ReceiptRecord) -> list[Any]:
    """Project a record onto the 16 main-tab columns, in header order."""
    vat = record.vat_breakdown
    return [
        record.vendor_name,
        record.transaction_date,
        record.total_amount,
        record.category.value,
        record.timestamp,
        record.entity or UNASSIGNED_ENTITY,
        _cell(record.original_currency),
        _cell(record.original_amount),
        _cell(record.exchange_rate),
        _cell(record.supplier_vat_number),
        _cell(vat.subtotal if vat else None),
        _cell(vat.vat_amount if vat else None),
        _cell(vat.vat_rate if vat else None),
        record.processed_by.value,
        record.validation_status.value,
        "YES" if record.has_errors else "NO",
    ]


def _accountant_notes(record: ReceiptRecord) -> str:
    notes = []
    if record.original_currency and record.original_currency != record.currency and record.exchange_rate:
        notes.append(
            f"Converted from {record.original_amount} {record.original_currency} @ {record.exchange_rate}"
        )
    vat = record.vat_breakdown
    if vat and vat.subtotal:
        notes.append(f"Subtotal: {vat.subtotal}")
    if vat and vat.vat_rate:
        notes.append(f"VAT Rate: {vat.vat_rate}%")
    if record.currency_conversion_pending:
        notes.append("Currency conversion pending")
    return " | ".join(notes)


def build_accountant_row(record: ReceiptRecord, base_currency: str) -> list[Any]:
    vat = record.vat_breakdown
    return [
        record.transaction_date,
        record.vendor_name,
        record.entity or UNASSIGNED_ENTITY,
        record.total_amount,
        base_currency,
        _cell(record.supplier_vat_number),
        _cell(vat.vat_amount if vat else None),
        record.category.value,
        _accountant_notes(record),
    ]


def _load_client(service_account_key: str) -> gspread.Client:
    key = (service_account_key or "").strip()
    if key.startswith("{"):
        return gspread.service_account_from_dict(json.loads(key))
    if key:
        return gspread.service_account(filename=key)
    return gspread.service_account()


class GoogleSheetsSink(SpreadsheetSink):
    """Process-scoped handle; the gspread client is built once on first use."""

    name = "google_sheets"

    def __init__(
        self,
        service_account_key: str = "",
        *,
        base_currency: str = "GBP",
        default_accountant_tab: str = DEFAULT_ACCOUNTANT_TAB,
        client_factory: Optional[Callable[[], gspread.Client]] = None,
    ) -> None:
        self._client_factory = client_factory or (lambda: _load_client(service_account_key))
        self._client: Optional[gspread.Client] = None
        self._lock = threading.Lock()
        self.base_currency = base_currency
        self.default_accountant_tab = default_accountant_tab

    def _get_client(self) -> gspread.Client:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None:
                self._client = self._client_factory()
            return self._client

    def _main_worksheet(self, route: TenantSheetRoute):
        spreadsheet = self._get_client().open_by_key(route.sheet_id)
        if route.main_tab_name:
            return spreadsheet.worksheet(route.main_tab_name)
        # First tab title varies by locale ("Sheet1", "Blad1", ...)
        return spreadsheet.get_worksheet(0)

    def append_row(self, route: TenantSheetRoute, record: ReceiptRecord) -> None:
        try:
            worksheet = self._main_worksheet(route)
            worksheet.append_row(
                build_main_row(record),
                value_input_option="USER_ENTERED",
                insert_data_option="INSERT_ROWS",
            )
        except (GSpreadException, OSError, ValueError) as exc:
            raise SinkFailure(
                "spreadsheet",
                f"Append to sheet {route.sheet_id} failed: {exc}",
            ) from exc
        logger.info("Receipt row appended to sheet %s", route.sheet_id)

    def _accountant_worksheet(self, spreadsheet, title: str):
        try:
            return spreadsheet.worksheet(title)
        except WorksheetNotFound:
            logger.info("Creating %s tab in sheet %s", title, spreadsheet.id)
            worksheet = spreadsheet.add_worksheet(title=title, rows=1000, cols=len(ACCOUNTANT_HEADERS))
            worksheet.update(values=[ACCOUNTANT_HEADERS], range_name="A1:I1", value_input_option="RAW")
            worksheet.format("A1:I1", {"textFormat": {"bold": True}})
            worksheet.freeze(rows=1)
            return worksheet

    def append_accountant_row(self, route: TenantSheetRoute, record: ReceiptRecord) -> None:
        title = route.accountant_tab_name or self.default_accountant_tab
        try:
            spreadsheet = self._get_client().open_by_key(route.sheet_id)
            worksheet = self._accountant_worksheet(spreadsheet, title)
            worksheet.append_row(
                build_accountant_row(record, self.base_currency),
                value_input_option="USER_ENTERED",
                insert_data_option="INSERT_ROWS",
            )
        except (GSpreadException, OSError, ValueError) as exc:
            raise SinkFailure("accountant_tab", f"Append to {title} failed: {exc}") from exc

    def validate_sheet_headers(self, sheet_id: str, tab_name: Optional[str] = None) -> dict[str, Any]:
        """Compare row 1 of the main tab with the expected headers, ignoring case."""
        route = TenantSheetRoute(sheet_id=sheet_id, main_tab_name=tab_name)
        try:
            actual = self._main_worksheet(route).row_values(1)
        except (GSpreadException, OSError, ValueError) as exc:
            raise SinkFailure("spreadsheet", f"Could not read headers from sheet {sheet_id}") from exc

        present = {str(value).strip().lower() for value in actual}
        missing = [header for header in MAIN_HEADERS if header.lower() not in present]
        return {"valid": not missing, "missing": missing, "actual": actual}
