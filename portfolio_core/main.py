"""FastAPI application for the property-management back office."""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from uuid import UUID

import logfire
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import ADMIN_TOKEN
from .database import SessionLocal, init_db
from .exceptions import AnalysisInProgressError, InvalidMetricError, VendorNotFoundError, VendorValidationError
from .jobs import dispatch_duplicate_analysis, get_analysis, get_latest_analysis, start_duplicate_analysis
from .periods import Period, TrendGranularity
from .schemas import (
    DuplicateAnalysisResponse,
    MarkDuplicateRequest,
    StartDuplicateAnalysisRequest,
    StartDuplicateAnalysisResponse,
    UtilityMetric,
    VendorActionResponse,
    VendorResponse,
)
from .utility_analytics import UtilityAnalytics
from .vendor_analytics import VendorAnalytics
from .vendors import get_duplicates, get_potential_duplicates_for, get_vendor, mark_canonical, mark_duplicate

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Portfolio Core API",
    description="Vendor deduplication and portfolio metrics",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)

# CORS for the back-office frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Portfolio Core API"}


# =============================================================================
# ADMIN API: Vendor deduplication
# =============================================================================

security = HTTPBearer(auto_error=False)


async def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify admin token for protected endpoints."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Admin token required")
    if credentials.credentials != ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


def _vendor_action_response(result) -> VendorActionResponse:
    return VendorActionResponse(
        success=True,
        message=result.message,
        vendor=VendorResponse.model_validate(result.vendor),
    )


@app.post(
    "/api/admin/vendors/duplicate-analysis",
    status_code=202,
    dependencies=[Depends(verify_admin)],
)
async def request_duplicate_analysis(
    request: StartDuplicateAnalysisRequest,
    background_tasks: BackgroundTasks,
) -> StartDuplicateAnalysisResponse:
    """Queue a duplicate scan over all canonical vendors."""
    db = SessionLocal()
    try:
        analysis = start_duplicate_analysis(
            db, threshold=request.threshold, limit=request.limit, requested_by="admin"
        )
        background_tasks.add_task(dispatch_duplicate_analysis, analysis.id)
        return StartDuplicateAnalysisResponse(
            message="Duplicate analysis started.",
            analysis=DuplicateAnalysisResponse.model_validate(analysis),
        )
    except AnalysisInProgressError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        db.close()


@app.get("/api/admin/vendors/duplicate-analysis/latest", dependencies=[Depends(verify_admin)])
async def get_latest_duplicate_analysis() -> DuplicateAnalysisResponse:
    """Most recently requested analysis, whatever its status."""
    db = SessionLocal()
    try:
        analysis = get_latest_analysis(db)
        if not analysis:
            raise HTTPException(status_code=404, detail="No duplicate analysis found")
        return DuplicateAnalysisResponse.model_validate(analysis)
    finally:
        db.close()


@app.get("/api/admin/vendors/duplicate-analysis/{analysis_id}", dependencies=[Depends(verify_admin)])
async def get_duplicate_analysis(analysis_id: UUID) -> DuplicateAnalysisResponse:
    db = SessionLocal()
    try:
        analysis = get_analysis(db, analysis_id)
        if not analysis:
            raise HTTPException(status_code=404, detail="Duplicate analysis not found")
        return DuplicateAnalysisResponse.model_validate(analysis)
    finally:
        db.close()


@app.post("/api/admin/vendors/{vendor_id}/mark-duplicate", dependencies=[Depends(verify_admin)])
async def mark_vendor_duplicate(vendor_id: UUID, request: MarkDuplicateRequest):
    """Link a vendor to its canonical record."""
    db = SessionLocal()
    try:
        vendor = get_vendor(db, vendor_id)
        result = mark_duplicate(db, vendor, request.canonical_vendor_id)
        return _vendor_action_response(result)
    except VendorValidationError as e:
        db.rollback()
        return JSONResponse(status_code=422, content=e.to_dict())
    except VendorNotFoundError:
        db.rollback()
        raise HTTPException(status_code=404, detail="Vendor not found")
    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        db.close()


@app.post("/api/admin/vendors/{vendor_id}/mark-canonical", dependencies=[Depends(verify_admin)])
async def mark_vendor_canonical(vendor_id: UUID) -> VendorActionResponse:
    """Unlink a vendor from its canonical record (no-op if already canonical)."""
    db = SessionLocal()
    try:
        vendor = get_vendor(db, vendor_id)
        return _vendor_action_response(mark_canonical(db, vendor))
    except VendorNotFoundError:
        db.rollback()
        raise HTTPException(status_code=404, detail="Vendor not found")
    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        db.close()


@app.get("/api/admin/vendors/{vendor_id}/duplicates", dependencies=[Depends(verify_admin)])
async def get_vendor_duplicates(vendor_id: UUID):
    """Linked duplicates plus unreviewed candidates from the latest analysis."""
    db = SessionLocal()
    try:
        vendor = get_vendor(db, vendor_id)
        return {
            "vendor": VendorResponse.model_validate(vendor),
            "duplicates": [VendorResponse.model_validate(v) for v in get_duplicates(db, vendor)],
            "potential_duplicates": get_potential_duplicates_for(db, vendor),
        }
    except VendorNotFoundError:
        raise HTTPException(status_code=404, detail="Vendor not found")
    finally:
        db.close()


# =============================================================================
# VENDOR METRICS
# =============================================================================


@app.get("/api/vendors/trades/summary")
async def get_trade_summary(
    period: str = "month",
    reference: date | None = Query(None, alias="date"),
):
    """Work-order totals per trade, busiest first."""
    db = SessionLocal()
    try:
        resolved = Period.from_request(period, reference)
        return {
            "period": resolved.to_dict(),
            "trades": VendorAnalytics(db).get_trade_summary(resolved),
        }
    finally:
        db.close()


@app.get("/api/vendors/compare")
async def compare_vendors(
    trade: str,
    period: str = "month",
    reference: date | None = Query(None, alias="date"),
):
    """Side-by-side metrics and insurance status for one trade."""
    db = SessionLocal()
    try:
        analytics = VendorAnalytics(db)
        vendors = analytics.get_vendors_for_comparison(trade, Period.from_request(period, reference))
        return {
            "trade": trade,
            "vendors": vendors,
            "stats": analytics.calculate_comparison_stats(vendors),
        }
    finally:
        db.close()


@app.get("/api/vendors/{vendor_id}/summary")
async def get_vendor_summary(
    vendor_id: UUID,
    period: str = "month",
    reference: date | None = Query(None, alias="date"),
):
    """Core metrics for a vendor and its duplicates. Unknown periods fall back to month."""
    db = SessionLocal()
    try:
        vendor = get_vendor(db, vendor_id)
        return VendorAnalytics(db).get_vendor_summary(vendor, Period.from_request(period, reference))
    except VendorNotFoundError:
        raise HTTPException(status_code=404, detail="Vendor not found")
    finally:
        db.close()


@app.get("/api/vendors/{vendor_id}/trend")
async def get_vendor_trend(
    vendor_id: UUID,
    periods: int = Query(12, ge=1, le=60),
    period_type: str = TrendGranularity.MONTH.value,
    reference: date | None = Query(None, alias="date"),
):
    db = SessionLocal()
    try:
        vendor = get_vendor(db, vendor_id)
        return VendorAnalytics(db).get_vendor_trend(vendor, periods, period_type, reference)
    except VendorNotFoundError:
        raise HTTPException(status_code=404, detail="Vendor not found")
    except InvalidMetricError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        db.close()


@app.get("/api/vendors/{vendor_id}/response-times")
async def get_vendor_response_times(
    vendor_id: UUID,
    period: str = "last_12_months",
    reference: date | None = Query(None, alias="date"),
):
    """Completion-time statistics compared to the portfolio."""
    db = SessionLocal()
    try:
        vendor = get_vendor(db, vendor_id)
        return VendorAnalytics(db).compare_response_time_to_portfolio(
            vendor, Period.from_request(period, reference)
        )
    except VendorNotFoundError:
        raise HTTPException(status_code=404, detail="Vendor not found")
    finally:
        db.close()


# =============================================================================
# UTILITY METRICS
# =============================================================================


@app.get("/api/utilities/portfolio-average")
async def get_utility_portfolio_average(
    utility_type: str,
    period: str = "month",
    metric: UtilityMetric = UtilityMetric.PER_UNIT,
    reference: date | None = Query(None, alias="date"),
):
    db = SessionLocal()
    try:
        resolved = Period.from_request(period, reference)
        return {
            "utility_type": utility_type,
            "metric": metric.value,
            "period": resolved.to_dict(),
            **UtilityAnalytics(db).get_portfolio_average(utility_type, resolved, metric),
        }
    finally:
        db.close()


@app.get("/api/utilities/anomalies")
async def get_utility_anomalies(
    utility_type: str,
    period: str = "month",
    threshold: float | None = Query(None, gt=0),
    metric: UtilityMetric = UtilityMetric.PER_UNIT,
    reference: date | None = Query(None, alias="date"),
):
    """Properties whose normalized cost is far from the portfolio average."""
    db = SessionLocal()
    try:
        analytics = UtilityAnalytics(db)
        resolved = Period.from_request(period, reference)
        if threshold is None:
            anomalies = analytics.get_anomalies(utility_type, resolved, metric=metric)
        else:
            anomalies = analytics.get_anomalies(utility_type, resolved, threshold, metric)
        return {
            "utility_type": utility_type,
            "period": resolved.to_dict(),
            "anomalies": anomalies,
        }
    finally:
        db.close()
