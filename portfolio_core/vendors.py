"""Canonical/duplicate vendor links.

Every vendor has an optional canonical reference, and the tree is kept at
depth one: a vendor that other vendors point at can never itself be linked
to another canonical vendor.
"""

import logging
import uuid
from typing import NamedTuple

from sqlalchemy.orm import Session

from .exceptions import VendorNotFoundError, VendorValidationError
from .models import Vendor, VendorDuplicateAnalysis
from .schemas import AnalysisStatus

logger = logging.getLogger(__name__)

CANONICAL_FIELD = "canonical_vendor_id"

SELF_DUPLICATE_MESSAGE = "A vendor cannot be marked as a duplicate of itself."
HAS_DUPLICATES_MESSAGE = "This vendor has duplicates linked to it. Reassign those duplicates first."
UNKNOWN_CANONICAL_MESSAGE = "The specified canonical vendor does not exist."
MARKED_DUPLICATE_MESSAGE = "Vendor marked as duplicate successfully."
ALREADY_CANONICAL_MESSAGE = "Vendor is already canonical."
MARKED_CANONICAL_MESSAGE = "Vendor marked as canonical successfully."


class VendorActionResult(NamedTuple):
    vendor: Vendor
    changed: bool
    message: str


def get_vendor(db: Session, vendor_id: uuid.UUID) -> Vendor:
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        raise VendorNotFoundError(f"Vendor {vendor_id} not found")
    return vendor


def has_duplicates(db: Session, vendor: Vendor) -> bool:
    return db.query(Vendor.id).filter(
        Vendor.canonical_vendor_id == vendor.id
    ).first() is not None


def get_duplicates(db: Session, vendor: Vendor) -> list[Vendor]:
    """Duplicates linked to this vendor (empty for a duplicate)."""
    return db.query(Vendor).filter(
        Vendor.canonical_vendor_id == vendor.id
    ).order_by(Vendor.company_name).all()


def get_group_vendor_ids(db: Session, vendor: Vendor) -> list[uuid.UUID]:
    """Canonical id first, then every duplicate id in the same group.

    Works from either side: a duplicate resolves to its canonical first.
    """
    canonical_id = vendor.canonical_vendor_id or vendor.id
    duplicate_ids = [
        row.id for row in db.query(Vendor.id).filter(
            Vendor.canonical_vendor_id == canonical_id
        ).all()
    ]
    return [canonical_id, *duplicate_ids]


def mark_duplicate(db: Session, vendor: Vendor, canonical_vendor_id: uuid.UUID) -> VendorActionResult:
    """Link `vendor` to a canonical vendor.

    A target that is itself a duplicate resolves to its own canonical, so
    links always point at a canonical record.
    """
    if vendor.id == canonical_vendor_id:
        raise VendorValidationError(CANONICAL_FIELD, SELF_DUPLICATE_MESSAGE)

    if has_duplicates(db, vendor):
        raise VendorValidationError(CANONICAL_FIELD, HAS_DUPLICATES_MESSAGE)

    canonical = db.get(Vendor, canonical_vendor_id)
    if canonical is None:
        raise VendorValidationError(CANONICAL_FIELD, UNKNOWN_CANONICAL_MESSAGE)

    if canonical.canonical_vendor_id is not None:
        canonical = db.get(Vendor, canonical.canonical_vendor_id)
        if canonical is None:
            raise VendorValidationError(CANONICAL_FIELD, UNKNOWN_CANONICAL_MESSAGE)

    vendor.canonical_vendor_id = canonical.id
    db.commit()
    db.refresh(vendor)
    logger.info(f"Vendor {vendor.id} marked as duplicate of {canonical.id}")
    return VendorActionResult(vendor, True, MARKED_DUPLICATE_MESSAGE)


def mark_canonical(db: Session, vendor: Vendor) -> VendorActionResult:
    """Clear the canonical link. Calling it on a canonical vendor is a no-op."""
    if vendor.canonical_vendor_id is None:
        return VendorActionResult(vendor, False, ALREADY_CANONICAL_MESSAGE)

    previous = vendor.canonical_vendor_id
    vendor.canonical_vendor_id = None
    db.commit()
    db.refresh(vendor)
    logger.info(f"Vendor {vendor.id} unlinked from {previous}; now canonical")
    return VendorActionResult(vendor, True, MARKED_CANONICAL_MESSAGE)


def get_potential_duplicates_for(db: Session, vendor: Vendor) -> list[dict]:
    """Matches involving `vendor` from the latest completed analysis."""
    analysis = db.query(VendorDuplicateAnalysis).filter(
        VendorDuplicateAnalysis.status == AnalysisStatus.COMPLETED.value
    ).order_by(VendorDuplicateAnalysis.completed_at.desc()).first()

    if analysis is None or not analysis.results:
        return []

    vendor_id = str(vendor.id)
    candidates = []
    for match in analysis.results:
        if match["vendor1"]["id"] == vendor_id:
            other = match["vendor2"]
        elif match["vendor2"]["id"] == vendor_id:
            other = match["vendor1"]
        else:
            continue
        candidates.append({
            "vendor": other,
            "similarity": match["similarity"],
            "match_reasons": match["match_reasons"],
        })
    return candidates
