from datetime import datetime
from enum import StrEnum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

UNASSIGNED_ENTITY = "Unassigned"


class Category(StrEnum):
    MAINTENANCE = "Maintenance"
    CLEANING_SUPPLIES = "Cleaning Supplies"
    UTILITIES = "Utilities"
    SUPPLIES = "Supplies"
    OTHER = "Other"

    @classmethod
    def coerce(cls, value: Any) -> "Category":
        """Map free text from extraction onto the closed set, defaulting to Other."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.OTHER
        text = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.OTHER

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


class ActorKind(StrEnum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class ValidationStatus(StrEnum):
    PASSED = "passed"
    WARNING = "warning"
    ADMIN_OVERRIDE = "admin_override"


class PendingStatus(StrEnum):
    PENDING_REVIEW = "pending_review"
    NEEDS_ADMIN_REVIEW = "needs_admin_review"


class FinalizationState(StrEnum):
    DRAFT = "DRAFT"
    MERGING = "MERGING"
    VALIDATING = "VALIDATING"
    ACCEPTED = "ACCEPTED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    PARTIALLY_COMMITTED = "PARTIALLY_COMMITTED"
    REJECTED = "REJECTED"


class VatBreakdown(BaseModel):
    subtotal: Optional[float] = None
    vat_amount: Optional[float] = None
    vat_rate: Optional[float] = None


# --- Draft / record ---


class ReceiptDraft(BaseModel):
    """Best-effort extraction output. Any optional field may be missing."""

    model_config = ConfigDict(frozen=True)

    vendor_name: str = ""
    transaction_date: str = ""
    total_amount: Optional[float] = Field(default=None, ge=0)
    category: Category = Category.OTHER
    currency: Optional[str] = None
    supplier_vat_number: Optional[str] = None
    vat_breakdown: Optional[VatBreakdown] = None
    timestamp: Optional[str] = None
    entity: Optional[str] = None
    original_currency: Optional[str] = None
    original_amount: Optional[float] = None
    exchange_rate: Optional[float] = None
    conversion_date: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value):
        return Category.coerce(value)

    @field_validator("currency", "original_currency", mode="before")
    @classmethod
    def _upper_code(cls, value):
        if value is None:
            return None
        text = str(value).strip().upper()
        return text or None


class ReceiptRecord(BaseModel):
    """Finalized receipt as committed to the ledger and mapped to sheet columns."""

    vendor_name: str
    transaction_date: str
    total_amount: float
    category: Category
    timestamp: str
    currency: str
    entity: str = UNASSIGNED_ENTITY
    original_currency: str
    original_amount: float
    exchange_rate: float
    conversion_date: Optional[str] = None
    supplier_vat_number: Optional[str] = None
    vat_breakdown: Optional[VatBreakdown] = None
    processed_by: ActorKind
    validation_status: ValidationStatus
    has_errors: bool = False
    currency_conversion_pending: bool = False


class ReceiptCorrections(BaseModel):
    """Human edits; only fields explicitly sent take part in the merge."""

    model_config = ConfigDict(extra="ignore")

    vendor_name: Optional[str] = None
    transaction_date: Optional[str] = None
    total_amount: Optional[float] = None
    category: Optional[str] = None
    currency: Optional[str] = None
    entity: Optional[str] = None
    supplier_vat_number: Optional[str] = None
    vat_breakdown: Optional[VatBreakdown] = None
    original_currency: Optional[str] = None
    original_amount: Optional[float] = None
    exchange_rate: Optional[float] = None

    def as_patch(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


# --- Validation ---


class ValidationResult(BaseModel):
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_valid(self) -> bool:
        return not self.errors

    def extend(self, other: "ValidationResult") -> "ValidationResult":
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        return self


# --- Routing ---


class TenantSheetRoute(BaseModel):
    sheet_id: str
    main_tab_name: Optional[str] = None
    accountant_tab_name: Optional[str] = None
    config_id: Optional[str] = None
    source: Literal["user", "entity", "default", "global"] = "global"

    @property
    def sheet_link(self) -> str:
        return f"https://docs.google.com/spreadsheets/d/{self.sheet_id}/edit"


# --- Requests ---


class FinalizeRequest(BaseModel):
    corrections: Optional[ReceiptCorrections] = None


class AdminApproveRequest(BaseModel):
    corrections: Optional[ReceiptCorrections] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class AdminRejectRequest(BaseModel):
    notes: str = Field(default="", max_length=2000)


class ArchiveRequest(BaseModel):
    archive_before: datetime
    dry_run: bool = False
    after_id: Optional[str] = None


# --- Responses ---


class FinalizationOutcome(BaseModel):
    success: bool
    receipt_id: str
    state: FinalizationState
    record: Optional[ReceiptRecord] = None
    sheets_write_success: bool = False
    sheet_link: Optional[str] = None
    needs_admin_review: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    message: str = ""


class RejectionOutcome(BaseModel):
    success: bool = True
    receipt_id: str
    state: FinalizationState = FinalizationState.REJECTED


class PendingReceiptOut(BaseModel):
    id: str
    user_id: str
    file_name: Optional[str] = None
    status: PendingStatus
    receipt_data: Optional[dict[str, Any]] = None
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    review_requested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PendingReceiptListResponse(BaseModel):
    items: list[PendingReceiptOut]


class UserStatsOut(BaseModel):
    user_id: str
    total_receipts: int = 0
    total_amount: float = 0.0
    pending_receipts: int = 0
    last_receipt_processed: Optional[str] = None
    last_receipt_at: Optional[datetime] = None


class SheetHeaderCheck(BaseModel):
    sheet_id: str
    valid: bool
    missing: list[str] = Field(default_factory=list)
    actual: list[str] = Field(default_factory=list)


class ArchiveSummary(BaseModel):
    archived: int = 0
    batches: int = 0
    dry_run: bool = False
    checkpoint: Optional[str] = None
