"""
workflow_service.py — Quotation workflow driver

One explicit instance per process (built in main.py lifespan) wires the
state machine, the optimistic coordinator, the repository and the optional
RFQ mailer / quote analyzer, and owns the user-visible model
(QuotationStore).

Business Rules:
- Plain events (CREATE_DRAFT, RECEIVE_REPLY, CANCEL, RETRY, RESET, EXPIRE,
  raw dispatch) commit synchronously: transition, persist, then publish
  to the store
- In-flight flows (send / analyze / confirm / deliver):
    1. commit the start event (e.g. draft → sending, pending=True)
    2. coordinator applies the predicted success context to the store
    3. sync_to_backend runs the remote effect once, then persists the real
       success context (retried on transient persistence errors only)
    4. confirm → store holds the real success context
       rollback → in-flight context restored, error event committed with
       {code, message, retryable}
- DELIVER has no error event: a failed delivery stays in `delivering`
  and confirm_delivery() can be retried
- FatalInconsistency → resync(id) from the repository, then re-raise
- A quotation with an operation in flight rejects every other event
- The store keeps only live quotations; delivered / cancelled / expired
  contexts are evicted on commit and read back from the repository
- Missing mailer / analyzer → the flow reports valid=False, nothing is
  committed

Called by: routers/quotations.py, services/reply_correlator.py, main.py
Depends on: services/quotation_machine.py, services/optimistic_service.py,
            services/quotation_repository.py, services/rfq_mailer.py,
            services/quote_analyzer.py
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

from loguru import logger

from ..exceptions import (
    ConflictError,
    FatalInconsistency,
    NotFoundError,
    SyncError,
    error_code_of,
    is_non_retryable_error,
)
from ..schemas.quotation import (
    HistoryEntry,
    QuotationContext,
    QuotationEvent,
    QuotationState,
    TransitionResult,
)
from . import quotation_machine as machine
from .optimistic_service import OptimisticCoordinator
from .quotation_repository import QuotationRepository
from .status_normalizer import is_terminal_status, normalize_status

E = QuotationEvent

IN_FLIGHT_REASON = "Another operation is in progress for this quotation"


def error_payload(error: BaseException) -> dict:
    """Structured {code, message, retryable} for an error event."""
    if isinstance(error, SyncError):
        return error.to_payload()
    return {
        "code": error_code_of(error) or type(error).__name__.upper(),
        "message": str(error) or type(error).__name__,
        "retryable": not is_non_retryable_error(error),
    }


def build_optional(name: str, factory: Callable[[], Any]):
    """Construct an optional collaborator; failure degrades to a warning."""
    try:
        return factory()
    except Exception as e:
        logger.warning("{} unavailable, continuing without it: {}", name, e)
        return None


class QuotationStore:
    """The user-visible model: id → latest context (optimistic or committed)."""

    def __init__(self):
        self._items: dict[str, QuotationContext] = {}

    def get(self, quotation_id: str) -> QuotationContext | None:
        return self._items.get(quotation_id)

    def put(self, context: QuotationContext) -> None:
        if is_terminal_status(context.state) and not context.pending:
            # Finished quotations are served from the repository
            self._items.pop(context.id, None)
        else:
            self._items[context.id] = context

    def values(self) -> list[QuotationContext]:
        return list(self._items.values())

    def remove(self, quotation_id: str) -> None:
        self._items.pop(quotation_id, None)

    def __contains__(self, quotation_id: str) -> bool:
        return quotation_id in self._items

    def __len__(self) -> int:
        return len(self._items)


class WorkflowService:
    def __init__(
        self,
        repository: QuotationRepository,
        coordinator: OptimisticCoordinator | None = None,
        mailer=None,
        analyzer=None,
        store: QuotationStore | None = None,
    ):
        self.repository = repository
        self.coordinator = coordinator or OptimisticCoordinator()
        self.mailer = mailer
        self.analyzer = analyzer
        self.store = store or QuotationStore()

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, quotation_id: str) -> QuotationContext:
        context = self.store.get(quotation_id)
        if context is None:
            context = self.repository.get(quotation_id)
            if context is None:
                raise NotFoundError(f"Quotation {quotation_id} not found")
            self.store.put(context)
        return context

    def list(self, state: str | None = None) -> list[QuotationContext]:
        """Visible contexts, newest first; the filter applies to the visible state."""
        target = normalize_status(state) if state else None
        result: dict[str, QuotationContext] = {}
        for stored in self.repository.list_all(state):
            visible = self.store.get(stored.id) or stored
            if target is None or visible.state == target:
                result[stored.id] = visible
        if target is not None:
            for visible in self.store.values():
                if visible.state == target:
                    result.setdefault(visible.id, visible)
        return sorted(result.values(), key=lambda c: c.created_at, reverse=True)

    def history(self, quotation_id: str) -> list[HistoryEntry]:
        return list(self.get(quotation_id).history)

    def available_events(self, quotation_id: str) -> list[str]:
        return machine.get_available_events(self.get(quotation_id).state)

    def list_stuck(self) -> list[QuotationContext]:
        """Quotations in error that have used up their retries."""
        return [
            ctx for ctx in self.list(QuotationState.ERROR.value)
            if not machine.can_retry(ctx)
        ]

    def resync(self, quotation_id: str) -> QuotationContext | None:
        """Replace the visible context with the repository's copy."""
        context = self.repository.get(quotation_id)
        if context is None:
            self.store.remove(quotation_id)
        else:
            self.store.put(context)
        logger.warning("Quotation {} resynchronized from the repository", quotation_id)
        return context

    # ── Synchronous events ───────────────────────────────────────────

    def _commit(self, context: QuotationContext) -> QuotationContext:
        self.repository.save(context)
        self.store.put(context)
        return context

    def create_draft(self, supplier: dict, items: list[dict]) -> TransitionResult:
        context = machine.create_initial_context()
        payload = {
            "supplier_id": supplier.get("id") or supplier.get("supplier_id") or "",
            "supplier_name": supplier.get("name") or supplier.get("supplier_name") or "",
            "supplier_email": supplier.get("email") or supplier.get("supplier_email") or "",
            "items": items,
        }
        result = machine.transition(context, E.CREATE_DRAFT, payload)
        if result.valid:
            self._commit(result.context)
            logger.info("Draft {} created for {}", context.id, payload["supplier_email"])
        return result

    def dispatch(self, quotation_id: str, event, payload: dict | None = None,
                 now: datetime | None = None) -> TransitionResult:
        """Commit one event synchronously."""
        if self.coordinator.is_entity_pending(quotation_id):
            return TransitionResult(valid=False, reason=IN_FLIGHT_REASON)
        context = self.get(quotation_id)
        result = machine.transition(context, event, payload, now=now)
        if result.valid:
            self._commit(result.context)
        return result

    def record_reply(self, quotation_id: str, payload: dict) -> TransitionResult:
        return self.dispatch(quotation_id, E.RECEIVE_REPLY, payload)

    def cancel(self, quotation_id: str, reason: str | None = None,
               cancelled_by: str | None = None, now: datetime | None = None) -> TransitionResult:
        payload = {"reason": reason, "cancelled_by": cancelled_by}
        return self.dispatch(quotation_id, E.CANCEL, payload, now=now)

    def retry(self, quotation_id: str) -> TransitionResult:
        return self.dispatch(quotation_id, E.RETRY)

    def reset(self, quotation_id: str) -> TransitionResult:
        return self.dispatch(quotation_id, E.RESET)

    def expire_overdue(self, now: datetime | None = None) -> list[str]:
        """Send EXPIRE to every sent/waitingReply quotation past its expiry."""
        expired = []
        for stored in self.repository.list_awaiting_reply():
            context = self.store.get(stored.id) or stored
            if not machine.is_expired(context, now):
                continue
            result = self.dispatch(context.id, E.EXPIRE, now=now)
            if result.valid:
                expired.append(context.id)
        if expired:
            logger.info("Expired {} overdue quotation(s)", len(expired))
        return expired

    # ── In-flight flows ──────────────────────────────────────────────

    async def send(self, quotation_id: str) -> TransitionResult:
        if self.mailer is None:
            return TransitionResult(valid=False, reason="Mailbox is not configured")
        return await self._run_in_flight(
            quotation_id, E.SEND, E.SEND_SUCCESS, E.SEND_ERROR,
            effect=self.mailer.send,
        )

    async def analyze(self, quotation_id: str) -> TransitionResult:
        if self.analyzer is None:
            return TransitionResult(valid=False, reason="Analyzer is not configured")

        async def run_analyzer(context: QuotationContext) -> dict:
            return await self.analyzer.analyze(context.reply_body or "", list(context.items))

        return await self._run_in_flight(
            quotation_id, E.ANALYZE, E.ANALYSIS_SUCCESS, E.ANALYSIS_ERROR,
            effect=run_analyzer, predict=False,
        )

    async def confirm(self, quotation_id: str) -> TransitionResult:
        return await self._run_in_flight(quotation_id, E.CONFIRM, E.CONFIRM_SUCCESS, E.CONFIRM_ERROR)

    async def deliver(self, quotation_id: str, invoice_number: str | None = None,
                      notes: str | None = None) -> TransitionResult:
        payload = {"invoice_number": invoice_number, "notes": notes}
        return await self._run_in_flight(
            quotation_id, E.DELIVER, E.DELIVER_SUCCESS, None, success_payload=payload,
        )

    async def confirm_delivery(self, quotation_id: str, invoice_number: str | None = None,
                               notes: str | None = None) -> TransitionResult:
        """Complete a delivery left in `delivering` by an earlier failure."""
        context = self.get(quotation_id)
        if context.state != QuotationState.DELIVERING:
            return TransitionResult(
                valid=False,
                reason=f"Quotation is '{context.state.value}', not 'delivering'",
            )
        payload = {"invoice_number": invoice_number, "notes": notes}
        return await self._run_in_flight(
            quotation_id, None, E.DELIVER_SUCCESS, None, success_payload=payload,
        )

    async def _run_in_flight(
        self,
        quotation_id: str,
        start_event: QuotationEvent | None,
        success_event: QuotationEvent,
        error_event: QuotationEvent | None,
        *,
        effect: Callable[[QuotationContext], Awaitable[dict]] | None = None,
        success_payload: dict | None = None,
        predict: bool = True,
    ) -> TransitionResult:
        if self.coordinator.is_entity_pending(quotation_id):
            return TransitionResult(valid=False, reason=IN_FLIGHT_REASON)

        in_flight = self.get(quotation_id)
        if start_event is not None:
            started = machine.transition(in_flight, start_event)
            if not started.valid:
                return started
            in_flight = self._commit(started.context)

        optimistic = in_flight
        if predict:
            predicted = machine.transition(in_flight, success_event, success_payload)
            if predicted.valid:
                optimistic = predicted.context

        effect_result: dict[str, Any] = {}

        async def sync_to_backend() -> QuotationContext:
            # The remote effect runs once; only persistence is retried.
            if effect is not None and "payload" not in effect_result:
                effect_result["payload"] = await effect(in_flight)
            payload = {**(success_payload or {}), **(effect_result.get("payload") or {})}
            final = machine.transition(in_flight, success_event, payload)
            if not final.valid:
                raise SyncError("INVALID_ARGUMENT", final.reason)
            await self.repository.sync(final.context)
            return final.context

        def on_conflict(error: BaseException):
            logger.warning("Conflict on {} during {}: {}", quotation_id, success_event.value, error)

        operation_id = f"{quotation_id}:{success_event.value}:{uuid.uuid4().hex[:8]}"
        try:
            outcome = await self.coordinator.execute(
                operation_id,
                original_state=in_flight,
                optimistic_state=optimistic,
                apply_optimistic=self.store.put,
                sync_to_backend=sync_to_backend,
                on_confirm=self.store.put,
                on_conflict=on_conflict,
                entity_id=quotation_id,
            )
        except FatalInconsistency:
            self.resync(quotation_id)
            raise

        if outcome.confirmed:
            return TransitionResult(valid=True, context=outcome.result)

        reason = str(outcome.error) or type(outcome.error).__name__
        if error_event is None:
            logger.warning("{} for {} failed, left in {}: {}",
                           success_event.value, quotation_id, in_flight.state.value, reason)
            return TransitionResult(valid=False, reason=reason, context=in_flight)

        failed = machine.transition(in_flight, error_event, error_payload(outcome.error))
        self.store.put(failed.context)
        try:
            self.repository.save(failed.context)
        except ConflictError as e:
            logger.warning("Stored copy of {} moved on: {}", quotation_id, e)
            return TransitionResult(valid=False, reason=reason, context=self.resync(quotation_id))
        except SyncError as e:
            logger.error("Could not persist {} for {}: {}", error_event.value, quotation_id, e)
        return TransitionResult(valid=False, reason=reason, context=failed.context)
