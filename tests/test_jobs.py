"""Tests for the duplicate analysis lifecycle."""
import pytest
from pydantic import ValidationError

from portfolio_core.deduplication import VendorDeduplicator
from portfolio_core.exceptions import AnalysisInProgressError, AnalysisStateError, AnalysisTimeoutError
from portfolio_core.jobs import (
    claim_analysis,
    get_latest_analysis,
    run_analysis,
    start_duplicate_analysis,
)
from portfolio_core.schemas import AnalysisStatus


class ExplodingDeduplicator(VendorDeduplicator):
    def find_duplicates_in(self, vendors, threshold, limit, deadline=None):
        raise RuntimeError("scan exploded")


def test_start_creates_pending_analysis(db) -> None:
    analysis = start_duplicate_analysis(db, threshold=0.7, limit=25, requested_by="admin")

    assert analysis.status == AnalysisStatus.PENDING.value
    assert analysis.threshold == 0.7
    assert analysis.limit == 25
    assert analysis.results is None
    assert get_latest_analysis(db).id == analysis.id


@pytest.mark.parametrize("threshold, limit", [(0.05, 50), (1.5, 50), (0.6, 0), (0.6, 501)])
def test_start_validates_threshold_and_limit(db, threshold, limit) -> None:
    with pytest.raises(ValidationError):
        start_duplicate_analysis(db, threshold=threshold, limit=limit)


def test_start_refuses_while_another_is_in_progress(db) -> None:
    start_duplicate_analysis(db)

    with pytest.raises(AnalysisInProgressError):
        start_duplicate_analysis(db)


def test_run_completes_and_stores_ordered_results(db, make_vendor) -> None:
    make_vendor("ABC Plumbing Inc", phone="802-555-0100")
    make_vendor("ABC Plumbing LLC", phone="8025550100")
    make_vendor("ABC Plumbing Co")
    make_vendor("Mad River HVAC")
    analysis = start_duplicate_analysis(db, threshold=0.3, limit=50)

    finished = run_analysis(db, analysis.id)

    assert finished.status == AnalysisStatus.COMPLETED.value
    assert finished.total_vendors == 4
    assert finished.comparisons_made == 6
    assert finished.duplicates_found == len(finished.results) == 3
    assert finished.started_at is not None
    assert finished.completed_at is not None
    similarities = [m["similarity"] for m in finished.results]
    assert similarities == sorted(similarities, reverse=True)
    assert similarities[0] == 0.75
    assert "Same phone number" in finished.results[0]["match_reasons"]


def test_new_analysis_allowed_after_completion(db) -> None:
    first = start_duplicate_analysis(db)
    run_analysis(db, first.id)

    second = start_duplicate_analysis(db)

    assert second.id != first.id


def test_failure_marks_failed_and_reraises(db, make_vendor) -> None:
    make_vendor("ABC Plumbing Inc")
    analysis = start_duplicate_analysis(db)

    with pytest.raises(RuntimeError, match="scan exploded"):
        run_analysis(db, analysis.id, deduplicator=ExplodingDeduplicator())

    db.expire_all()
    failed = get_latest_analysis(db)
    assert failed.status == AnalysisStatus.FAILED.value
    assert failed.error_message == "scan exploded"
    assert failed.results is None
    assert failed.completed_at is not None


def test_timeout_is_recorded_as_failure(db, make_vendor) -> None:
    make_vendor("ABC Plumbing Inc")
    make_vendor("ABC Plumbing LLC")
    analysis = start_duplicate_analysis(db)

    with pytest.raises(AnalysisTimeoutError):
        run_analysis(db, analysis.id, timeout_seconds=-1)

    db.expire_all()
    assert get_latest_analysis(db).status == AnalysisStatus.FAILED.value


def test_only_one_worker_can_claim(db) -> None:
    analysis = start_duplicate_analysis(db)

    assert claim_analysis(db, analysis.id) is True
    assert claim_analysis(db, analysis.id) is False


def test_running_a_claimed_analysis_is_refused(db) -> None:
    analysis = start_duplicate_analysis(db)
    claim_analysis(db, analysis.id)

    with pytest.raises(AnalysisStateError):
        run_analysis(db, analysis.id)

    db.expire_all()
    assert get_latest_analysis(db).status == AnalysisStatus.PROCESSING.value
