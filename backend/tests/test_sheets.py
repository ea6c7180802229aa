from unittest.mock import MagicMock

import pytest
from gspread.exceptions import APIError, WorksheetNotFound

from app.core.errors import SinkFailure
from app.schemas.receipt import (
    ActorKind,
    Category,
    ReceiptRecord,
    TenantSheetRoute,
    ValidationStatus,
    VatBreakdown,
)
from app.services.sheets import (
    ACCOUNTANT_HEADERS,
    MAIN_HEADERS,
    GoogleSheetsSink,
    build_accountant_row,
    build_main_row,
)


def _record(**overrides):
    values = dict(
        vendor_name="Corner Shop",
        transaction_date="2024-03-01",
        total_amount=79.0,
        category=Category.CLEANING_SUPPLIES,
        timestamp="2024-03-01T10:00:00Z",
        currency="GBP",
        entity="North",
        original_currency="USD",
        original_amount=100.0,
        exchange_rate=0.79,
        supplier_vat_number="GB123456789",
        vat_breakdown=VatBreakdown(subtotal=65.83, vat_amount=13.17, vat_rate=20),
        processed_by=ActorKind.ADMIN,
        validation_status=ValidationStatus.ADMIN_OVERRIDE,
    )
    values.update(overrides)
    return ReceiptRecord(**values)


def _api_error():
    response = MagicMock()
    response.json.return_value = {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}}
    return APIError(response)


def test_main_row_has_sixteen_columns_in_header_order():
    row = build_main_row(_record())

    assert len(row) == len(MAIN_HEADERS) == 16
    assert row == [
        "Corner Shop",
        "2024-03-01",
        79.0,
        "Cleaning Supplies",
        "2024-03-01T10:00:00Z",
        "North",
        "USD",
        100.0,
        0.79,
        "GB123456789",
        65.83,
        13.17,
        20.0,
        "admin",
        "admin_override",
        "NO",
    ]


def test_main_row_blanks_missing_optionals():
    row = build_main_row(_record(supplier_vat_number=None, vat_breakdown=None))
    assert row[9:13] == ["", "", "", ""]


def test_accountant_row_notes_conversion_and_vat():
    row = build_accountant_row(_record(), "GBP")

    assert len(row) == len(ACCOUNTANT_HEADERS) == 9
    assert row[:8] == ["2024-03-01", "Corner Shop", "North", 79.0, "GBP", "GB123456789", 13.17, "Cleaning Supplies"]
    assert row[8] == "Converted from 100.0 USD @ 0.79 | Subtotal: 65.83 | VAT Rate: 20.0%"


def test_accountant_notes_skip_conversion_for_base_currency():
    record = _record(original_currency="GBP", original_amount=79.0, exchange_rate=1.0, vat_breakdown=None)
    assert build_accountant_row(record, "GBP")[8] == ""


def test_accountant_notes_flag_pending_conversion():
    record = _record(
        currency="USD",
        original_currency="USD",
        total_amount=100.0,
        original_amount=100.0,
        exchange_rate=1.0,
        vat_breakdown=None,
        currency_conversion_pending=True,
    )
    assert build_accountant_row(record, "GBP")[8] == "Currency conversion pending"


# --- Sink ---


@pytest.fixture
def gspread_client():
    client = MagicMock()
    spreadsheet = client.open_by_key.return_value
    spreadsheet.id = "sheet-1"
    return client


def _sink(client):
    return GoogleSheetsSink(client_factory=lambda: client, base_currency="GBP")


def test_append_row_uses_first_tab_by_default(gspread_client):
    _sink(gspread_client).append_row(TenantSheetRoute(sheet_id="sheet-1"), _record())

    spreadsheet = gspread_client.open_by_key.return_value
    spreadsheet.get_worksheet.assert_called_once_with(0)
    worksheet = spreadsheet.get_worksheet.return_value
    worksheet.append_row.assert_called_once()
    assert worksheet.append_row.call_args.args[0] == build_main_row(_record())
    assert worksheet.append_row.call_args.kwargs["value_input_option"] == "USER_ENTERED"


def test_append_row_uses_named_tab(gspread_client):
    _sink(gspread_client).append_row(TenantSheetRoute(sheet_id="sheet-1", main_tab_name="Receipts"), _record())
    gspread_client.open_by_key.return_value.worksheet.assert_called_once_with("Receipts")


def test_api_error_becomes_sink_failure(gspread_client):
    gspread_client.open_by_key.return_value.get_worksheet.return_value.append_row.side_effect = _api_error()

    with pytest.raises(SinkFailure) as exc:
        _sink(gspread_client).append_row(TenantSheetRoute(sheet_id="sheet-1"), _record())
    assert exc.value.sink == "spreadsheet"


def test_accountant_tab_is_created_with_headers(gspread_client):
    spreadsheet = gspread_client.open_by_key.return_value
    spreadsheet.worksheet.side_effect = WorksheetNotFound("Accountant_CSV_Ready")
    created = spreadsheet.add_worksheet.return_value

    _sink(gspread_client).append_accountant_row(TenantSheetRoute(sheet_id="sheet-1"), _record())

    spreadsheet.add_worksheet.assert_called_once_with(title="Accountant_CSV_Ready", rows=1000, cols=9)
    created.update.assert_called_once_with(values=[ACCOUNTANT_HEADERS], range_name="A1:I1", value_input_option="RAW")
    created.freeze.assert_called_once_with(rows=1)
    assert created.append_row.call_args.args[0] == build_accountant_row(_record(), "GBP")


def test_accountant_tab_name_comes_from_route(gspread_client):
    route = TenantSheetRoute(sheet_id="sheet-1", accountant_tab_name="Books")
    _sink(gspread_client).append_accountant_row(route, _record())
    gspread_client.open_by_key.return_value.worksheet.assert_called_once_with("Books")


def test_client_is_built_once():
    factory = MagicMock()
    sink = GoogleSheetsSink(client_factory=factory)
    route = TenantSheetRoute(sheet_id="sheet-1")

    sink.append_row(route, _record())
    sink.append_row(route, _record())

    factory.assert_called_once_with()


def test_header_check_reports_missing_columns(gspread_client):
    worksheet = gspread_client.open_by_key.return_value.get_worksheet.return_value
    worksheet.row_values.return_value = [header.upper() for header in MAIN_HEADERS[:-2]]

    report = _sink(gspread_client).validate_sheet_headers("sheet-1")

    assert report["valid"] is False
    assert report["missing"] == ["Validation Status", "Has Errors"]
