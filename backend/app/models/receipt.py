import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
ID_TYPE = String(64)


def _new_id() -> str:
    return str(uuid.uuid4())


class PendingReceipt(Base):
    __tablename__ = "pending_receipts"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_review', 'needs_admin_review')",
            name="chk_pending_receipt_status",
        ),
        Index("idx_pending_receipts_user", "user_id"),
        Index("idx_pending_receipts_status", "status", "review_requested_at"),
    )

    id = Column(ID_TYPE, primary_key=True, default=_new_id)
    user_id = Column(ID_TYPE, nullable=False)
    file_name = Column(String(255))
    status = Column(
        String(32),
        nullable=False,
        default="pending_review",
        server_default=text("'pending_review'"),
    )
    receipt_data = Column(JSON_TYPE)
    validation_errors = Column(JSON_TYPE)
    validation_warnings = Column(JSON_TYPE)
    review_requested_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ReceiptLedgerEntry(Base):
    """Committed receipt. The primary key is the originating receipt id."""

    __tablename__ = "receipt_ledger"
    __table_args__ = (
        Index("idx_receipt_ledger_user", "user_id"),
        Index("idx_receipt_ledger_created", "created_at"),
    )

    id = Column(ID_TYPE, primary_key=True)
    user_id = Column(ID_TYPE, nullable=False)
    file_name = Column(String(255))
    vendor_name = Column(String(255), nullable=False)
    transaction_date = Column(String(10), nullable=False)
    total_amount = Column(Float, nullable=False)
    category = Column(String(64), nullable=False)
    currency = Column(String(3), nullable=False)
    entity = Column(String(255), nullable=False)
    original_currency = Column(String(3), nullable=False)
    original_amount = Column(Float, nullable=False)
    exchange_rate = Column(Float, nullable=False, default=1.0, server_default=text("1.0"))
    conversion_date = Column(String(40))
    currency_conversion_pending = Column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    supplier_vat_number = Column(String(32))
    vat_breakdown = Column(JSON_TYPE)
    receipt_data = Column(JSON_TYPE, nullable=False)
    receipt_timestamp = Column(String(40), nullable=False)
    processed_by = Column(String(16), nullable=False)
    validation_status = Column(String(32), nullable=False)
    has_errors = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    validation_warnings = Column(JSON_TYPE)
    approved_by = Column(ID_TYPE)
    approved_at = Column(DateTime(timezone=True))
    admin_notes = Column(Text)
    sheet_config_id = Column(ID_TYPE)
    sheets_write_success = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    sheet_link = Column(Text)
    sync_incomplete = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    stats_applied = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class RejectedReceipt(Base):
    __tablename__ = "rejected_receipts"

    id = Column(ID_TYPE, primary_key=True)
    user_id = Column(ID_TYPE, nullable=False)
    file_name = Column(String(255))
    status = Column(String(32))
    receipt_data = Column(JSON_TYPE)
    validation_errors = Column(JSON_TYPE)
    validation_warnings = Column(JSON_TYPE)
    review_requested_at = Column(DateTime(timezone=True))
    original_created_at = Column(DateTime(timezone=True))
    rejected_by = Column(ID_TYPE, nullable=False)
    rejected_at = Column(DateTime(timezone=True), nullable=False)
    admin_notes = Column(Text, nullable=False)


class UserStats(Base):
    __tablename__ = "user_stats"

    user_id = Column(ID_TYPE, primary_key=True)
    total_receipts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    total_amount = Column(Float, nullable=False, default=0.0, server_default=text("0"))
    pending_receipts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_receipt_processed = Column(String(255))
    last_receipt_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}


class FxRateCache(Base):
    __tablename__ = "fx_rate_cache"

    from_currency = Column(String(3), primary_key=True)
    to_currency = Column(String(3), primary_key=True)
    rate = Column(Float, nullable=False)
    cached_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class SheetConfig(Base):
    __tablename__ = "sheet_configs"
    __table_args__ = (Index("idx_sheet_configs_default", "is_default", "status"),)

    id = Column(ID_TYPE, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    sheet_id = Column(String(255), nullable=False)
    main_tab_name = Column(String(255))
    accountant_tab_name = Column(String(255))
    is_default = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    status = Column(String(16), nullable=False, default="active", server_default=text("'active'"))
    total_receipts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_receipt_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Entity(Base):
    __tablename__ = "entities"
    __table_args__ = (UniqueConstraint("name", name="uniq_entities_name"),)

    id = Column(ID_TYPE, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    sheet_config_id = Column(ID_TYPE, ForeignKey("sheet_configs.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(ID_TYPE, primary_key=True)
    email = Column(String(255))
    entity_id = Column(ID_TYPE, ForeignKey("entities.id", ondelete="SET NULL"))
    sheet_config_id = Column(ID_TYPE, ForeignKey("sheet_configs.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ArchivedReceipt(Base):
    __tablename__ = "archived_receipts"

    id = Column(ID_TYPE, primary_key=True)
    user_id = Column(ID_TYPE, nullable=False)
    record = Column(JSON_TYPE, nullable=False)
    original_created_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    archived_by = Column(ID_TYPE)


class EventLog(Base):
    __tablename__ = "event_logs"
    __table_args__ = (
        CheckConstraint(
            "severity IN ('info', 'warning', 'error', 'critical')",
            name="chk_event_log_severity",
        ),
        Index("idx_event_logs_created", "created_at"),
    )

    id = Column(ID_TYPE, primary_key=True, default=_new_id)
    severity = Column(String(16), nullable=False)
    function_name = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON_TYPE)
    user_id = Column(ID_TYPE)
    receipt_id = Column(ID_TYPE)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(ID_TYPE, primary_key=True, default=_new_id)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(ID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(ID_TYPE)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
