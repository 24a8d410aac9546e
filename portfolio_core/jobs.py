"""Duplicate analysis runs.

Workflow:
1. start_duplicate_analysis() creates a pending VendorDuplicateAnalysis
2. run_analysis() claims it (pending -> processing), scans all canonical
   vendors and stores the ordered matches (processing -> completed)
3. Any exception marks the record failed with its message, is logged, and
   is re-raised to the caller. Failed runs are not retried.

Only the worker whose conditional UPDATE moved the record out of pending
may write to it.
"""

import logging
import time
import uuid
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from .config import (
    DEDUP_DEFAULT_LIMIT,
    DEDUP_DEFAULT_THRESHOLD,
    DEDUP_JOB_TIMEOUT_SECONDS,
)
from .database import SessionLocal
from .deduplication import VendorDeduplicator, count_comparisons, load_canonical_vendors
from .exceptions import AnalysisInProgressError, AnalysisStateError
from .models import VendorDuplicateAnalysis
from .schemas import AnalysisStatus, StartDuplicateAnalysisRequest

logger = logging.getLogger(__name__)

IN_PROGRESS_STATUSES = (AnalysisStatus.PENDING.value, AnalysisStatus.PROCESSING.value)


def start_duplicate_analysis(
    db: Session,
    threshold: float = DEDUP_DEFAULT_THRESHOLD,
    limit: int = DEDUP_DEFAULT_LIMIT,
    requested_by: str | None = None,
) -> VendorDuplicateAnalysis:
    """Create a pending analysis.

    Raises pydantic.ValidationError for an out-of-range threshold/limit and
    AnalysisInProgressError when another run is pending or processing.
    """
    request = StartDuplicateAnalysisRequest(threshold=threshold, limit=limit)

    in_progress = db.query(VendorDuplicateAnalysis).filter(
        VendorDuplicateAnalysis.status.in_(IN_PROGRESS_STATUSES)
    ).first()
    if in_progress:
        raise AnalysisInProgressError("An analysis is already in progress.")

    analysis = VendorDuplicateAnalysis(
        status=AnalysisStatus.PENDING.value,
        threshold=request.threshold,
        limit=request.limit,
        requested_by=requested_by,
    )
    db.add(analysis)
    db.commit()
    db.refresh(analysis)
    logger.info(f"Duplicate analysis {analysis.id} requested by {requested_by or 'system'}")
    return analysis


def get_analysis(db: Session, analysis_id: uuid.UUID) -> VendorDuplicateAnalysis | None:
    return db.get(VendorDuplicateAnalysis, analysis_id)


def get_latest_analysis(db: Session) -> VendorDuplicateAnalysis | None:
    return db.query(VendorDuplicateAnalysis).order_by(
        VendorDuplicateAnalysis.created_at.desc()
    ).first()


def claim_analysis(db: Session, analysis_id: uuid.UUID) -> bool:
    """Move a pending analysis to processing. False if someone else got it."""
    result = db.execute(
        update(VendorDuplicateAnalysis)
        .where(
            VendorDuplicateAnalysis.id == analysis_id,
            VendorDuplicateAnalysis.status == AnalysisStatus.PENDING.value,
        )
        .values(
            status=AnalysisStatus.PROCESSING.value,
            started_at=datetime.utcnow(),
            error_message=None,
        )
    )
    db.commit()
    return result.rowcount == 1


def mark_failed(db: Session, analysis_id: uuid.UUID, message: str) -> None:
    analysis = db.get(VendorDuplicateAnalysis, analysis_id)
    if analysis is None:
        return
    analysis.status = AnalysisStatus.FAILED.value
    analysis.error_message = message
    analysis.results = None
    analysis.completed_at = datetime.utcnow()
    db.commit()


def run_analysis(
    db: Session,
    analysis_id: uuid.UUID,
    deduplicator: VendorDeduplicator | None = None,
    timeout_seconds: float = DEDUP_JOB_TIMEOUT_SECONDS,
) -> VendorDuplicateAnalysis:
    """Run the pairwise scan for one analysis record and store its results."""
    if not claim_analysis(db, analysis_id):
        raise AnalysisStateError(f"Analysis {analysis_id} is not pending")

    deduplicator = deduplicator or VendorDeduplicator()
    analysis = db.get(VendorDuplicateAnalysis, analysis_id)
    logger.info(
        f"Starting duplicate analysis {analysis_id} "
        f"(threshold={analysis.threshold}, limit={analysis.limit})"
    )

    try:
        deadline = time.monotonic() + timeout_seconds
        vendors = load_canonical_vendors(db)
        total_vendors = len(vendors)
        comparisons = count_comparisons(total_vendors)

        matches = deduplicator.find_duplicates_in(
            vendors, analysis.threshold, analysis.limit, deadline=deadline
        )

        analysis.results = [match.model_dump(mode="json") for match in matches]
        analysis.status = AnalysisStatus.COMPLETED.value
        analysis.total_vendors = total_vendors
        analysis.comparisons_made = comparisons
        analysis.duplicates_found = len(matches)
        analysis.completed_at = datetime.utcnow()
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception(f"Duplicate analysis {analysis_id} failed: {e}")
        mark_failed(db, analysis_id, str(e))
        raise

    logger.info(
        f"Duplicate analysis {analysis_id} completed: {total_vendors} vendors, "
        f"{comparisons} comparisons, {len(matches)} potential duplicates"
    )
    return analysis


def dispatch_duplicate_analysis(analysis_id: uuid.UUID) -> None:
    """Background entry point: runs an analysis in its own session."""
    db = SessionLocal()
    try:
        run_analysis(db, analysis_id)
    finally:
        db.close()
