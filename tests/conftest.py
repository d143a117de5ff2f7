"""
conftest.py — Shared Test Fixtures for quoteflow

Provides an in-memory SQLite database, a repository bound to it, a
zero-delay optimistic coordinator, a workflow service with mocked mailer
and analyzer, and a FastAPI TestClient wired to those instances.

Business Rules:
- All tests run against an isolated in-memory DB
- No test talks to Gmail or Claude; collaborators are AsyncMocks
- Each test function gets fresh tables and fresh service instances

Called by: all test files via pytest autodiscovery
Depends on: quoteflow.models (Base), quoteflow.services, quoteflow.main
"""

import os
os.environ["TESTING"] = "1"  # Must be set before importing quoteflow modules

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from quoteflow.models import Base
from quoteflow.schemas.quotation import QuotationEvent as E
from quoteflow.services import quotation_machine as machine
from quoteflow.services.optimistic_service import OptimisticCoordinator
from quoteflow.services.quotation_repository import QuotationRepository
from quoteflow.services.workflow_service import WorkflowService

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── Builders ─────────────────────────────────────────────────────────


def make_items(count: int = 2) -> list[dict]:
    return [
        {"id": f"item-{i}", "name": f"Widget {i}", "quantity_to_order": 10 * i, "unit": "pcs",
         "current_price": 2.0}
        for i in range(1, count + 1)
    ]


def make_draft(email: str = "sales@acme.com", items: list[dict] | None = None, **extra):
    """Draft context built through the machine (CREATE_DRAFT committed)."""
    context = machine.create_initial_context(**extra)
    result = machine.transition(context, E.CREATE_DRAFT, {
        "supplier_id": "sup-1",
        "supplier_name": "Acme",
        "supplier_email": email,
        "items": make_items() if items is None else items,
    }, now=T0)
    assert result.valid, result.reason
    return result.context


def advance(context, *steps):
    """Apply (event, payload, now) steps, asserting each is accepted."""
    for step in steps:
        event, payload, now = (tuple(step) + (None, None))[:3]
        result = machine.transition(context, event, payload, now=now)
        assert result.valid, f"{event}: {result.reason}"
        context = result.context
    return context


def quoted_items(*totals: float) -> list[dict]:
    return [
        {"id": f"item-{i}", "name": f"Widget {i}", "quantity_to_order": 1,
         "unit_price": total, "total_price": total}
        for i, total in enumerate(totals, start=1)
    ]


def make_sent(sent_at=T0, **kwargs):
    return advance(
        make_draft(**kwargs),
        (E.SEND, None, sent_at),
        (E.SEND_SUCCESS, {"message_id": "m1", "sent_at": sent_at}, sent_at),
    )


def make_quoted(total: float = 150.50, **kwargs):
    context = make_sent(**kwargs)
    return advance(
        context,
        (E.RECEIVE_REPLY, {"email_body": "Price is 150.50 total", "from": "sales@acme.com"}, T0 + timedelta(hours=2)),
        (E.ANALYZE, None, T0 + timedelta(hours=2)),
        (E.ANALYSIS_SUCCESS, {"quoted_items": quoted_items(total), "confidence": 0.9}, T0 + timedelta(hours=3)),
    )


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_tables():
    """Create all tables, yield, then tear down."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def repository() -> QuotationRepository:
    return QuotationRepository(TestSessionLocal)


@pytest.fixture()
def coordinator() -> OptimisticCoordinator:
    return OptimisticCoordinator(retry_attempts=3, retry_delay_ms=0)


@pytest.fixture()
def mailer():
    mock = AsyncMock()
    mock.send.return_value = {"message_id": "gmail-123", "sent_at": T0, "subject": "RFQ: Widget 1"}
    return mock


@pytest.fixture()
def analyzer():
    mock = AsyncMock()
    mock.analyze.return_value = {
        "quoted_items": quoted_items(100.0, 50.5),
        "delivery_date": "2026-03-20",
        "payment_terms": "30 days",
        "confidence": 0.8,
    }
    return mock


@pytest.fixture()
def workflow(repository, coordinator, mailer, analyzer) -> WorkflowService:
    return WorkflowService(repository, coordinator, mailer=mailer, analyzer=analyzer)


@pytest.fixture()
def client(workflow):
    """TestClient wired to the fixture services (lifespan not run)."""
    from quoteflow.main import app
    from quoteflow.services.reply_correlator import ReplyCorrelator
    from quoteflow.utils.gmail_client import MailboxConnection

    connection = MailboxConnection(access_token="", email="buyer@ourco.com")
    app.state.workflow = workflow
    app.state.connection = connection
    app.state.correlator = ReplyCorrelator(workflow, connection)
    app.state.poller = None
    yield TestClient(app)
    for name in ("workflow", "connection", "correlator", "poller"):
        if hasattr(app.state, name):
            delattr(app.state, name)
