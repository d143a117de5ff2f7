"""
quoteflow — Supplier quotation workflow service

Lifespan builds the explicit service instances once and stores them on
app.state:
  repository → coordinator → workflow (mailer, analyzer) → correlator → poller

Business Rules:
- The reply poller never starts when TESTING is set or polling is disabled
- Every QuoteflowError renders as ErrorResponse with its status code
- Request validation errors render as ErrorResponse with status 422

Called by: uvicorn (quoteflow.main:app)
Depends on: everything under quoteflow/
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from . import __version__
from .config import settings
from .database import SessionLocal, engine
from .exceptions import QuoteflowError
from .http_client import close_clients
from .logging_config import setup_logging
from .models import Base
from .routers.quotations import router as quotations_router
from .schemas.api import ErrorResponse
from .services.optimistic_service import OptimisticCoordinator
from .services.quotation_repository import QuotationRepository
from .services.quote_analyzer import QuoteAnalyzer
from .services.reply_correlator import ReplyCorrelator, ReplyPoller
from .services.rfq_mailer import RfqMailer
from .services.workflow_service import WorkflowService, build_optional
from .utils.gmail_client import MailboxConnection


def _alert_inconsistency(operation, error):
    logger.bind(alert="fatal_inconsistency").critical(
        "Quotation {} needs a full resync (operation {}): {}",
        operation.entity_id, operation.id, error,
    )


def build_services(app: FastAPI, session_factory=SessionLocal) -> None:
    """Construct the service graph and attach it to app.state."""
    connection = MailboxConnection.from_settings()
    repository = QuotationRepository(session_factory)
    coordinator = OptimisticCoordinator(on_inconsistent=_alert_inconsistency)
    workflow = WorkflowService(
        repository,
        coordinator,
        mailer=build_optional("RFQ mailer", lambda: RfqMailer(connection)),
        analyzer=build_optional("Quote analyzer", QuoteAnalyzer),
    )
    correlator = ReplyCorrelator(workflow, connection)

    app.state.connection = connection
    app.state.workflow = workflow
    app.state.correlator = correlator
    app.state.poller = ReplyPoller(correlator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine, checkfirst=True)
    build_services(app)

    poller = app.state.poller
    if settings.reply_poll_enabled and not settings.testing:
        poller.start()
    else:
        logger.info("Reply poller disabled")

    logger.info("quoteflow {} started", __version__)
    yield

    await poller.stop()
    await close_clients()


app = FastAPI(title="quoteflow", version=__version__, lifespan=lifespan)
app.include_router(quotations_router)


@app.exception_handler(QuoteflowError)
async def quoteflow_error_handler(request: Request, exc: QuoteflowError):
    if exc.status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    body = ErrorResponse(error=exc.message, status_code=exc.status_code, detail=exc.payload)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = ErrorResponse(
        error="Request validation failed",
        status_code=422,
        detail=[{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()],
    )
    return JSONResponse(status_code=422, content=body.model_dump())


@app.get("/api/health")
async def health(request: Request):
    workflow = getattr(request.app.state, "workflow", None)
    connection = getattr(request.app.state, "connection", None)
    poller = getattr(request.app.state, "poller", None)
    return {
        "status": "ok",
        "version": __version__,
        "mailbox_connected": bool(connection and connection.is_valid()),
        "poller_running": bool(poller and poller.running),
        "pending_operations": workflow.coordinator.get_state()["pending_count"] if workflow else 0,
    }
