# WORKFLOW: Shared pytest fixtures for the duty calculation test suite.
# Used by: All test modules
# Fixtures:
# 1. db_session - Fresh in-memory SQLite database per test
# 2. client - FastAPI TestClient wired to the test database
# 3. add_entry / add_policy / add_override / add_snapshot / add_eligibility - Row builders
#
# Test database flow: Create tables -> Yield session -> Drop tables

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import (
    Base, TariffCodeEntry, ManualFormulaOverride, HistoricalRateSnapshot,
    PolicyRecord, TradeAgreementEligibility,
)
from db.session import get_db

SQLALCHEMY_DATABASE_URL = "sqlite://"


@pytest.fixture
def db_engine():
    test_engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory):
    """TestClient whose get_db dependency yields sessions on the test database."""
    from api.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def add_entry(db_session):
    def _add(hts_number, **fields):
        fields.setdefault("version", "2025")
        entry = TariffCodeEntry(hts_number=hts_number, **fields)
        db_session.add(entry)
        db_session.commit()
        return entry
    return _add


@pytest.fixture
def add_policy(db_session):
    def _add(tax_code, extra_rate_type="ADD_ON", **fields):
        fields.setdefault("tax_name", tax_code)
        fields.setdefault("country_code", "ALL")
        fields.setdefault("hts_number", "*")
        policy = PolicyRecord(tax_code=tax_code, extra_rate_type=extra_rate_type, **fields)
        db_session.add(policy)
        db_session.commit()
        return policy
    return _add


@pytest.fixture
def add_override(db_session):
    def _add(hts_number, formula, **fields):
        fields.setdefault("formula_type", "GENERAL")
        override = ManualFormulaOverride(hts_number=hts_number, formula=formula, **fields)
        db_session.add(override)
        db_session.commit()
        return override
    return _add


@pytest.fixture
def add_snapshot(db_session):
    def _add(hts8, **fields):
        fields.setdefault("source_year", 2025)
        fields.setdefault("begin_effect_date", date(2025, 1, 1))
        fields.setdefault("end_effective_date", date(2025, 12, 31))
        snapshot = HistoricalRateSnapshot(hts8=hts8, **fields)
        db_session.add(snapshot)
        db_session.commit()
        return snapshot
    return _add


@pytest.fixture
def add_eligibility(db_session):
    def _add(hts_number, agreement, **fields):
        row = TradeAgreementEligibility(hts_number=hts_number, trade_agreement_code=agreement, **fields)
        db_session.add(row)
        db_session.commit()
        return row
    return _add
