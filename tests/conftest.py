"""
Pytest fixtures for the statement engine test suite.

Provides:
- SQLite (default) or PostgreSQL database sessions
- Factories for projects, facilities, periods, events and form data
- Structured log capture

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of the test database.  Defaults to an
  in-memory SQLite database; set a postgresql:// URL to run the suite
  against PostgreSQL.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from statement_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from statement_kernel.domain.clock import DeterministicClock
from statement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from statement_kernel.models import (
    DynamicActivity,
    Event,
    EventMapping,
    Facility,
    FormDataEntry,
    Project,
    ReportingPeriod,
)

DEFAULT_DATABASE_URL = "sqlite://"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture statement engine logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            logs = captured_logs()
            assert any(r["message"] == "statement_generation_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("statement_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(scope="session")
def _db_engine():
    engine = init_engine_from_url(get_database_url())
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session(_db_engine) -> Generator[Session, None, None]:
    """A session whose work is rolled back and whose rows are deleted after the test."""
    from statement_kernel.db.base import Base

    db_session = get_session()
    try:
        yield db_session
    finally:
        db_session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            db_session.execute(table.delete())
        db_session.commit()
        db_session.close()


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(datetime(2025, 7, 15, 9, 30, tzinfo=timezone.utc))


# =============================================================================
# Data factories
# =============================================================================


@pytest.fixture
def project(session) -> Project:
    row = Project(name="HIV Programme", code="HIV-01", project_type="HIV")
    session.add(row)
    session.flush()
    return row


@pytest.fixture
def facilities(session) -> list[Facility]:
    rows = [
        Facility(name="Kigali Hospital", facility_type="hospital", district="Gasabo"),
        Facility(name="Nyamata Health Centre", facility_type="health_center", district="Bugesera"),
    ]
    session.add_all(rows)
    session.flush()
    return rows


@pytest.fixture
def periods(session) -> dict[str, ReportingPeriod]:
    """Two consecutive annual periods: FY2024 and FY2025."""
    previous = ReportingPeriod(
        year=2024, period_type="ANNUAL", start_date=date(2023, 7, 1), end_date=date(2024, 6, 30)
    )
    current = ReportingPeriod(
        year=2025, period_type="ANNUAL", start_date=date(2024, 7, 1), end_date=date(2025, 6, 30)
    )
    session.add_all([previous, current])
    session.flush()
    return {"previous": previous, "current": current}


@pytest.fixture
def make_event(session):
    """Create (or reuse) an event by code."""
    created: dict[str, Event] = {}

    def _make(code: str) -> Event:
        if code not in created:
            event = Event(code=code, description=code.replace("_", " ").title())
            session.add(event)
            session.flush()
            created[code] = event
        return created[code]

    return _make


@pytest.fixture
def add_amount(session, project, make_event):
    """
    Store one normalized form row: an activity mapped to ``event_code``.

    Usage::

        add_amount("TAX_REVENUE", Decimal("1000"), facility, period)
    """

    def _add(
        event_code: str,
        amount: Decimal | str | int,
        facility: Facility,
        period: ReportingPeriod,
        entity_type: str = "execution",
    ) -> FormDataEntry:
        event = make_event(event_code)
        activity = DynamicActivity(
            code=f"HIV_EXEC_{event_code}",
            name=event_code.replace("_", " ").title(),
            project_type="HIV",
            module_type=entity_type,
        )
        session.add(activity)
        session.flush()
        session.add(EventMapping(event_id=event.id, activity_id=activity.id))
        entry = FormDataEntry(
            project_id=project.id,
            facility_id=facility.id,
            reporting_period_id=period.id,
            entity_type=entity_type,
            entity_id=activity.id,
            form_data={"amount": str(amount)},
        )
        session.add(entry)
        session.flush()
        return entry

    return _add

