"""Pytest fixtures: an in-memory SQLite database per test and model factories."""
import os
import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

# Must be set before portfolio_core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_TOKEN"] = "test-admin-token"

# Ensure repository root is on sys.path for module resolution
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_core import models  # noqa: E402
from portfolio_core.database import Base, SessionLocal, engine  # noqa: E402

ADMIN_TOKEN = "test-admin-token"
REFERENCE = date(2025, 6, 15)


@pytest.fixture
def db():
    """Fresh schema and session for each test."""

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_vendor(db):
    """Create and persist a Vendor; keyword arguments override defaults."""

    def _make(company_name: str = "Acme Services", **kwargs) -> models.Vendor:
        vendor = models.Vendor(company_name=company_name, **kwargs)
        db.add(vendor)
        db.commit()
        db.refresh(vendor)
        return vendor

    return _make


@pytest.fixture
def make_property(db):
    """Create and persist a Property."""

    def _make(name: str = "Maple Court", **kwargs) -> models.Property:
        prop = models.Property(name=name, **kwargs)
        db.add(prop)
        db.commit()
        db.refresh(prop)
        return prop

    return _make


@pytest.fixture
def make_work_order(db):
    """Create a work order opened at `opened_at`, optionally closed `days` later."""

    def _make(
        vendor: models.Vendor,
        opened_at: datetime,
        amount: float | None = None,
        closed_at: datetime | None = None,
        status: str | None = None,
        **kwargs,
    ) -> models.WorkOrder:
        if status is None:
            status = "completed" if closed_at else "open"
        work_order = models.WorkOrder(
            vendor_id=vendor.id,
            vendor_name=vendor.company_name,
            opened_at=opened_at,
            closed_at=closed_at,
            status=status,
            amount=Decimal(str(amount)) if amount is not None else None,
            **kwargs,
        )
        db.add(work_order)
        db.commit()
        return work_order

    return _make


@pytest.fixture
def make_utility_expense(db):
    """Create a utility expense, reusing one GL account per utility type."""

    accounts: dict[str, models.UtilityAccount] = {}

    def _make(
        prop: models.Property,
        utility_type: str,
        expense_date: date,
        amount: float,
    ) -> models.UtilityExpense:
        account = accounts.get(utility_type)
        if account is None:
            account = models.UtilityAccount(
                gl_account_number=f"6{len(accounts):03d}",
                gl_account_name=utility_type.title(),
                utility_type=utility_type,
            )
            db.add(account)
            db.flush()
            accounts[utility_type] = account

        expense = models.UtilityExpense(
            property_id=prop.id,
            utility_account_id=account.id,
            expense_date=expense_date,
            amount=Decimal(str(amount)),
        )
        db.add(expense)
        db.commit()
        return expense

    return _make
