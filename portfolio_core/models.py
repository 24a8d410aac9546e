"""SQLAlchemy models for the property-management portfolio.

Data Layers:
- Reference: Property, Unit, Vendor, UtilityAccount
- Facts: WorkOrder, UtilityExpense (read-only for the metrics engine)
- Workflow: VendorDuplicateAnalysis (one record per deduplication run)

Vendor identity is a parent-pointer tree of depth one: a vendor with
canonical_vendor_id = NULL is canonical, any other vendor is a duplicate
pointing directly at a canonical vendor.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


# -----------------------------------------------------------------------------
# REFERENCE LAYER: Properties and units
# -----------------------------------------------------------------------------


class Property(Base):
    """A managed property (building or complex)."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str | None] = mapped_column(
        String(100), unique=True, index=True,
        doc="Identifier in the upstream property-management system"
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    property_type: Mapped[str | None] = mapped_column(String(50))

    # Size (denominators for per-unit / per-sqft utility metrics)
    unit_count: Mapped[int | None] = mapped_column(
        Integer,
        doc="Number of units; when null the count of active Unit rows is used"
    )
    total_sqft: Mapped[int | None] = mapped_column(Integer)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    exclude_from_utility_reports: Mapped[bool] = mapped_column(
        Boolean, default=False,
        doc="Removed from every portfolio utility statistic"
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    units: Mapped[list["Unit"]] = relationship("Unit", back_populates="property")
    utility_exclusions: Mapped[list["PropertyUtilityExclusion"]] = relationship(
        "PropertyUtilityExclusion", back_populates="property"
    )

    def __repr__(self) -> str:
        return f"<Property {self.name}>"


class Unit(Base):
    """A rentable unit within a property."""

    __tablename__ = "units"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    unit_number: Mapped[str | None] = mapped_column(String(50))
    sqft: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    property: Mapped["Property"] = relationship("Property", back_populates="units")

    def __repr__(self) -> str:
        return f"<Unit {self.unit_number} @ {self.property_id}>"


# -----------------------------------------------------------------------------
# VENDOR LAYER
# -----------------------------------------------------------------------------


class Vendor(Base):
    """A service vendor (plumber, HVAC contractor, landscaper, ...).

    Canonical vs duplicate:
    - canonical_vendor_id NULL: canonical record, the authoritative entity
    - canonical_vendor_id set: duplicate of the referenced canonical vendor

    A canonical vendor that already has duplicates cannot itself become a
    duplicate, so chains never form.
    """

    __tablename__ = "vendors"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str | None] = mapped_column(String(100), index=True)
    canonical_vendor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("vendors.id"), index=True,
        doc="Canonical vendor this record duplicates (null when canonical)"
    )

    # Identity and contact
    company_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    contact_name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(50))

    # Address
    address_street: Mapped[str | None] = mapped_column(String(255))
    address_city: Mapped[str | None] = mapped_column(String(100))
    address_state: Mapped[str | None] = mapped_column(String(50))
    address_zip: Mapped[str | None] = mapped_column(String(20))

    # Classification
    vendor_type: Mapped[str | None] = mapped_column(String(100))
    vendor_trades: Mapped[str | None] = mapped_column(
        Text,
        doc="Comma-delimited trade list, primary trade first: 'Plumbing, HVAC'"
    )

    # Insurance and licensing
    workers_comp_expires: Mapped[date | None] = mapped_column(Date)
    liability_ins_expires: Mapped[date | None] = mapped_column(Date)
    auto_ins_expires: Mapped[date | None] = mapped_column(Date)
    state_lic_expires: Mapped[date | None] = mapped_column(Date)

    # Status
    do_not_use: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    canonical_vendor: Mapped["Vendor | None"] = relationship(
        "Vendor", remote_side="Vendor.id", back_populates="duplicate_vendors"
    )
    duplicate_vendors: Mapped[list["Vendor"]] = relationship(
        "Vendor", back_populates="canonical_vendor"
    )
    work_orders: Mapped[list["WorkOrder"]] = relationship(
        "WorkOrder", back_populates="vendor"
    )

    def __repr__(self) -> str:
        return f"<Vendor {self.company_name}>"

    @property
    def is_canonical(self) -> bool:
        return self.canonical_vendor_id is None

    @property
    def is_duplicate(self) -> bool:
        return self.canonical_vendor_id is not None

    @property
    def effective_vendor_id(self) -> uuid.UUID:
        """The id metrics for this vendor are attributed to."""
        return self.canonical_vendor_id or self.id

    @classmethod
    def usable_filters(cls) -> list:
        """Filters for active vendors not flagged do-not-use."""
        return [cls.is_active.is_(True), cls.do_not_use.is_(False)]


class VendorDuplicateAnalysis(Base):
    """One run of the pairwise duplicate scan.

    Workflow:
    1. Created as pending by an admin request (threshold, limit)
    2. A single worker claims it: pending -> processing
    3. Worker stores results: processing -> completed, or records the error:
       processing -> failed (results stay empty)
    """

    __tablename__ = "vendor_duplicate_analyses"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False, index=True,
        doc="Run status: pending, processing, completed, failed"
    )
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)

    # Results (completed runs only)
    results: Mapped[list | None] = mapped_column(
        JSON,
        doc="Ordered list of {vendor1, vendor2, similarity, match_reasons}"
    )
    total_vendors: Mapped[int | None] = mapped_column(Integer)
    comparisons_made: Mapped[int | None] = mapped_column(Integer)
    duplicates_found: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)

    requested_by: Mapped[str | None] = mapped_column(String(100))
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<VendorDuplicateAnalysis {self.id} status={self.status}>"

    @property
    def is_in_progress(self) -> bool:
        return self.status in ("pending", "processing")


# -----------------------------------------------------------------------------
# FACT LAYER: Work orders and utility expenses
# -----------------------------------------------------------------------------


class WorkOrder(Base):
    """A maintenance work order assigned to a vendor at a property."""

    __tablename__ = "work_orders"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str | None] = mapped_column(String(100), index=True)
    vendor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("vendors.id"), index=True
    )
    property_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("properties.id"), index=True
    )
    unit_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("units.id")
    )
    vendor_name: Mapped[str | None] = mapped_column(
        String(255),
        doc="Vendor name as it appeared on the source work order"
    )

    opened_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(
        String(20), default="open", index=True,
        doc="open, in_progress, completed, cancelled"
    )
    priority: Mapped[str | None] = mapped_column(
        String(20),
        doc="emergency, high, normal, low (null when unspecified)"
    )
    category: Mapped[str | None] = mapped_column(String(100))
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    vendor: Mapped["Vendor | None"] = relationship("Vendor", back_populates="work_orders")
    property: Mapped["Property | None"] = relationship("Property")

    def __repr__(self) -> str:
        return f"<WorkOrder {self.id} {self.status}>"


class UtilityAccount(Base):
    """A general-ledger account carrying one utility type."""

    __tablename__ = "utility_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    gl_account_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    gl_account_name: Mapped[str | None] = mapped_column(String(255))
    utility_type: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True,
        doc="water, electric, gas, garbage, sewer, ..."
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<UtilityAccount {self.gl_account_number} {self.utility_type}>"


class UtilityExpense(Base):
    """A utility bill line booked against a property."""

    __tablename__ = "utility_expenses"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    utility_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("utility_accounts.id"), nullable=False, index=True
    )
    expense_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vendor_name: Mapped[str | None] = mapped_column(String(255))

    property: Mapped["Property"] = relationship("Property")
    utility_account: Mapped["UtilityAccount"] = relationship("UtilityAccount")

    def __repr__(self) -> str:
        return f"<UtilityExpense {self.expense_date} {self.amount}>"


class PropertyUtilityExclusion(Base):
    """Excludes a property from portfolio statistics for one utility type.

    Used for HOA-billed or tenant-paid utilities, where the property's cost
    is not comparable to the rest of the portfolio.
    """

    __tablename__ = "property_utility_exclusions"
    __table_args__ = (UniqueConstraint("property_id", "utility_type"),)

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    utility_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))

    property: Mapped["Property"] = relationship("Property", back_populates="utility_exclusions")
