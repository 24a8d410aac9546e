"""Pydantic schemas for the portfolio core.

These models are the contract between the engines and their consumers:
the admin review UI (duplicate analyses, vendor mutations) and the
background job (serialized duplicate matches).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .config import (
    DEDUP_DEFAULT_LIMIT,
    DEDUP_DEFAULT_THRESHOLD,
    DEDUP_MAX_LIMIT,
    DEDUP_MAX_THRESHOLD,
    DEDUP_MIN_THRESHOLD,
)


# =============================================================================
# ENUMS
# =============================================================================


class AnalysisStatus(str, Enum):
    """Lifecycle of a duplicate analysis run."""

    PENDING = "pending"
    """Requested, not yet claimed by a worker."""

    PROCESSING = "processing"
    """Claimed by exactly one worker."""

    COMPLETED = "completed"
    """Results stored."""

    FAILED = "failed"
    """Error recorded; results stay empty."""


class WorkOrderStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Only these statuses have a meaningful completion time
CLOSED_STATUSES = (WorkOrderStatus.COMPLETED.value, WorkOrderStatus.CANCELLED.value)


class WorkOrderPriority(str, Enum):
    EMERGENCY = "emergency"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    UNSPECIFIED = "unspecified"
    """Reporting bucket for work orders with no priority."""


class UtilityType(str, Enum):
    """Utility types carried by GL utility accounts."""

    WATER = "water"
    ELECTRIC = "electric"
    GAS = "gas"
    GARBAGE = "garbage"
    SEWER = "sewer"
    OTHER = "other"


class UtilityMetric(str, Enum):
    """Normalization used when comparing properties."""

    PER_UNIT = "per_unit"
    PER_SQFT = "per_sqft"


class InsuranceStatus(str, Enum):
    """Status of one insurance expiration date."""

    MISSING = "missing"
    EXPIRED = "expired"
    EXPIRING_SOON = "expiring_soon"
    CURRENT = "current"


# =============================================================================
# DEDUPLICATION
# =============================================================================


class VendorSummary(BaseModel):
    """Vendor fields shown side by side in the duplicate review UI."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    vendor_trades: str | None = None


class DuplicateMatch(BaseModel):
    """A pair of vendors that likely represent the same business."""

    vendor1: VendorSummary
    vendor2: VendorSummary
    similarity: float = Field(ge=0.0, le=1.0, description="Composite score, 3 decimals")
    match_reasons: list[str] = Field(
        default_factory=list,
        description="Human-readable signals that fired, e.g. 'Same phone number'"
    )


class StartDuplicateAnalysisRequest(BaseModel):
    """Admin request to scan all canonical vendors for duplicates."""

    threshold: float = Field(
        default=DEDUP_DEFAULT_THRESHOLD,
        ge=DEDUP_MIN_THRESHOLD,
        le=DEDUP_MAX_THRESHOLD,
        description="Minimum composite similarity for a pair to be reported"
    )
    limit: int = Field(
        default=DEDUP_DEFAULT_LIMIT,
        ge=1,
        le=DEDUP_MAX_LIMIT,
        description="Maximum number of pairs to keep"
    )


class DuplicateAnalysisResponse(BaseModel):
    """A duplicate analysis record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: AnalysisStatus
    threshold: float
    limit: int
    results: list[DuplicateMatch] | None = None
    total_vendors: int | None = None
    comparisons_made: int | None = None
    duplicates_found: int | None = None
    error_message: str | None = None
    requested_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


class StartDuplicateAnalysisResponse(BaseModel):
    message: str
    analysis: DuplicateAnalysisResponse


# =============================================================================
# VENDOR MUTATIONS
# =============================================================================


class MarkDuplicateRequest(BaseModel):
    canonical_vendor_id: UUID = Field(description="Vendor that becomes the canonical record")


class VendorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    vendor_trades: str | None = None
    canonical_vendor_id: UUID | None = None
    is_canonical: bool
    is_active: bool
    do_not_use: bool


class VendorActionResponse(BaseModel):
    """Result of mark-duplicate / mark-canonical."""

    success: bool
    message: str
    vendor: VendorResponse
