"""Quotation state machine — explicit (state, event) transition table.

Flow: idle → draft → sending → sent → (waitingReply) → replied → analyzing →
      quoted → confirming → confirmed → delivering → delivered
      with cancel / expire / error / retry / reset side paths.

Design rules:
  - transition() is a pure function: it never mutates the context it is
    given and never raises for a rejected event. Callers get
    TransitionResult(valid=False, reason=...) instead.
  - The new context and its history entry are validated together in one
    model_validate, so a transition is either fully committed (state + history + fields)
    or not at all.
  - Timeline fields (sent_at, replied_at, ...) are first-write-wins; only
    RESET clears them.
  - quoted_total is computed from quoted_items on the context itself.

Called by: services/workflow_service.py, routers/quotations.py
Depends on: schemas/quotation.py, config.py
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..schemas.quotation import (
    ErrorInfo,
    HistoryEntry,
    QuotationContext,
    QuotationEvent,
    QuotationItem,
    QuotationState,
    QuotedItem,
    TransitionResult,
)
from ..utils import generate_id, parse_datetime, utcnow

S = QuotationState
E = QuotationEvent

ID_PREFIX = settings.quotation_id_prefix
EXPIRY_DAYS = settings.quotation_expiry_days
CANCEL_WINDOW_HOURS = settings.cancel_window_hours
MAX_ERROR_RETRIES = settings.max_error_retries

# Large free-text fields are kept on the context, not copied into history.
_HISTORY_OMIT = frozenset({"email_body", "emailBody"})

TIMELINE_FIELDS = (
    "sent_at", "replied_at", "analyzed_at", "confirmed_at",
    "delivered_at", "cancelled_at", "expires_at",
)


def create_initial_context(**partial: Any) -> QuotationContext:
    """Fresh idle context. A collision-resistant prefixed id is generated when none is given."""
    now = utcnow()
    data: dict[str, Any] = {
        "id": generate_id(ID_PREFIX),
        "created_at": now,
        "updated_at": now,
    }
    data.update({k: v for k, v in partial.items() if v is not None})
    return QuotationContext.model_validate(data)


# ═══════════════════════════════════════════════════════════════════════
# GUARDS
# ═══════════════════════════════════════════════════════════════════════


def can_send(context: QuotationContext, now: datetime | None = None) -> bool:
    """Valid id, a supplier email and at least one complete item."""
    if not context.id or not context.id.startswith(ID_PREFIX) or len(context.id) <= len(ID_PREFIX):
        return False
    if not (context.supplier_email or "").strip():
        return False
    if not context.items:
        return False
    return all(
        item.id and (item.name or "").strip() and (item.quantity_to_order or 0) > 0
        for item in context.items
    )


def can_confirm(context: QuotationContext, now: datetime | None = None) -> bool:
    return context.quoted_total > 0 and len(context.quoted_items) > 0


def can_cancel(context: QuotationContext, now: datetime | None = None) -> bool:
    """Always before confirmation; afterwards only inside the cancel window."""
    if context.confirmed_at is None:
        return True
    now = now or utcnow()
    return now - context.confirmed_at < timedelta(hours=CANCEL_WINDOW_HOURS)


def can_retry(context: QuotationContext, now: datetime | None = None) -> bool:
    return (context.retry_count or 0) < MAX_ERROR_RETRIES


def is_expired(context: QuotationContext, now: datetime | None = None) -> bool:
    if context.sent_at is None:
        return False
    now = now or utcnow()
    return now - context.sent_at >= timedelta(days=EXPIRY_DAYS)


GUARDS: dict[str, Callable[[QuotationContext, datetime | None], bool]] = {
    "can_send": can_send,
    "can_confirm": can_confirm,
    "can_cancel": can_cancel,
    "can_retry": can_retry,
    "is_expired": is_expired,
}

GUARD_REASONS = {
    "can_send": "Supplier email and items are required",
    "can_confirm": "Quotation needs a total to confirm",
    "can_cancel": f"Confirmed orders older than {CANCEL_WINDOW_HOURS}h cannot be cancelled",
    "can_retry": f"Retry limit reached ({MAX_ERROR_RETRIES} attempts); cancel the quotation",
    "is_expired": f"Quotation has not been waiting {EXPIRY_DAYS} days yet",
}


# ═══════════════════════════════════════════════════════════════════════
# ACTIONS: each returns the field updates for the new context
# ═══════════════════════════════════════════════════════════════════════


def _get(payload: dict, *keys: str, default=None):
    """First present key; accepts snake_case and legacy camelCase names."""
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _stamp(context: QuotationContext, field: str, value: datetime) -> dict:
    if getattr(context, field) is not None:
        return {}
    return {field: value}


def set_draft_data(context, payload, now):
    items = _get(payload, "items", default=[])
    return {
        "supplier_id": str(_get(payload, "supplier_id", "supplierId", default="")),
        "supplier_name": _get(payload, "supplier_name", "supplierName", default=""),
        "supplier_email": _get(payload, "supplier_email", "supplierEmail", default=""),
        "items": tuple(QuotationItem.model_validate(i) for i in items),
    }


def mark_pending(context, payload, now):
    return {"pending": True, "previous_state": context.state}


def clear_pending(context, payload, now):
    return {"pending": False, "previous_state": None}


def record_send_success(context, payload, now):
    sent_at = parse_datetime(_get(payload, "sent_at", "sentAt")) or now
    updates = {
        "message_id": _get(payload, "message_id", "messageId"),
        "email_subject": _get(payload, "subject", default=context.email_subject),
    }
    updates.update(_stamp(context, "sent_at", sent_at))
    updates.update(_stamp(context, "expires_at", sent_at + timedelta(days=EXPIRY_DAYS)))
    return updates


def record_error(context, payload, now):
    error = ErrorInfo(
        code=str(_get(payload, "code", default="UNKNOWN")),
        message=str(_get(payload, "message", default="Unknown error")),
        retryable=bool(_get(payload, "retryable", default=False)),
    )
    return {
        "error": error,
        "retry_count": min((context.retry_count or 0) + 1, MAX_ERROR_RETRIES),
    }


def record_reply(context, payload, now):
    received_at = parse_datetime(_get(payload, "received_at", "receivedAt")) or now
    updates = {
        "reply_body": _get(payload, "email_body", "emailBody", default=""),
        "reply_from": _get(payload, "from_", "from", "reply_from", default=""),
        "reply_subject": _get(payload, "subject"),
        "reply_message_id": _get(payload, "message_id", "messageId"),
    }
    updates.update(_stamp(context, "replied_at", received_at))
    return updates


def record_analysis(context, payload, now):
    quoted = _get(payload, "quoted_items", "quotedItems", default=[])
    confidence = _get(payload, "confidence")
    updates = {
        "quoted_items": tuple(QuotedItem.model_validate(i) for i in quoted),
        "delivery_date": _get(payload, "delivery_date", "deliveryDate"),
        "payment_terms": _get(payload, "payment_terms", "paymentTerms"),
        "ai_confidence": float(confidence) if confidence is not None else None,
    }
    updates.update(_stamp(context, "analyzed_at", now))
    return updates


def record_confirmation(context, payload, now):
    return _stamp(context, "confirmed_at", now)


def record_delivery(context, payload, now):
    updates = {
        "invoice_number": _get(payload, "invoice_number", "invoiceNumber"),
        "delivery_notes": _get(payload, "notes", "delivery_notes"),
    }
    updates.update(_stamp(context, "delivered_at", now))
    return updates


def record_cancellation(context, payload, now):
    updates = {
        "cancellation_reason": _get(payload, "reason", default="Cancelled by user"),
        "cancelled_by": _get(payload, "cancelled_by", "cancelledBy"),
        "pending": False,
        "previous_state": None,
    }
    updates.update(_stamp(context, "cancelled_at", now))
    return updates


def clear_error(context, payload, now):
    return {"error": None, "pending": False, "previous_state": None}


def reset_context(context, payload, now):
    updates: dict[str, Any] = {field: None for field in TIMELINE_FIELDS}
    updates.update({
        "quoted_items": (),
        "message_id": None,
        "reply_body": None,
        "reply_from": None,
        "reply_subject": None,
        "reply_message_id": None,
        "delivery_date": None,
        "payment_terms": None,
        "ai_confidence": None,
        "cancellation_reason": None,
        "cancelled_by": None,
        "error": None,
        "retry_count": 0,
        "pending": False,
        "previous_state": None,
    })
    return updates


# ═══════════════════════════════════════════════════════════════════════
# TRANSITION TABLE
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Transition:
    target: QuotationState
    guard: str | None = None
    actions: tuple[Callable, ...] = ()


_CANCEL = Transition(S.CANCELLED, actions=(record_cancellation,))

TRANSITIONS: dict[tuple[QuotationState, QuotationEvent], Transition] = {
    (S.IDLE, E.CREATE_DRAFT): Transition(S.DRAFT, actions=(set_draft_data,)),

    (S.DRAFT, E.SEND): Transition(S.SENDING, "can_send", (mark_pending,)),
    (S.DRAFT, E.CANCEL): _CANCEL,

    (S.SENDING, E.SEND_SUCCESS): Transition(S.SENT, actions=(record_send_success, clear_pending)),
    (S.SENDING, E.SEND_ERROR): Transition(S.ERROR, actions=(record_error, clear_pending)),

    (S.SENT, E.RECEIVE_REPLY): Transition(S.REPLIED, actions=(record_reply,)),
    (S.SENT, E.EXPIRE): Transition(S.EXPIRED, "is_expired"),
    (S.SENT, E.CANCEL): _CANCEL,

    (S.WAITING_REPLY, E.RECEIVE_REPLY): Transition(S.REPLIED, actions=(record_reply,)),
    (S.WAITING_REPLY, E.EXPIRE): Transition(S.EXPIRED, "is_expired"),
    (S.WAITING_REPLY, E.CANCEL): _CANCEL,

    (S.REPLIED, E.ANALYZE): Transition(S.ANALYZING, actions=(mark_pending,)),
    (S.REPLIED, E.CANCEL): _CANCEL,

    (S.ANALYZING, E.ANALYSIS_SUCCESS): Transition(S.QUOTED, actions=(record_analysis, clear_pending)),
    (S.ANALYZING, E.ANALYSIS_ERROR): Transition(S.ERROR, actions=(record_error, clear_pending)),

    (S.QUOTED, E.CONFIRM): Transition(S.CONFIRMING, "can_confirm", (mark_pending,)),
    (S.QUOTED, E.CANCEL): _CANCEL,

    (S.CONFIRMING, E.CONFIRM_SUCCESS): Transition(S.CONFIRMED, actions=(record_confirmation, clear_pending)),
    (S.CONFIRMING, E.CONFIRM_ERROR): Transition(S.ERROR, actions=(record_error, clear_pending)),

    (S.CONFIRMED, E.DELIVER): Transition(S.DELIVERING, actions=(mark_pending,)),
    (S.CONFIRMED, E.CANCEL): Transition(S.CANCELLED, "can_cancel", (record_cancellation,)),

    (S.DELIVERING, E.DELIVER_SUCCESS): Transition(S.DELIVERED, actions=(record_delivery, clear_pending)),

    (S.CANCELLED, E.RESET): Transition(S.DRAFT, actions=(reset_context,)),
    (S.EXPIRED, E.RESET): Transition(S.DRAFT, actions=(reset_context,)),

    (S.ERROR, E.RETRY): Transition(S.DRAFT, "can_retry", (clear_error,)),
    (S.ERROR, E.CANCEL): _CANCEL,
}


def get_available_events(state: QuotationState | str) -> list[str]:
    """Events listed for a state, in table order. Empty for final states."""
    try:
        state = QuotationState(state)
    except ValueError:
        return []
    return [event.value for (src, event) in TRANSITIONS if src == state]


def _resolve(context: QuotationContext, event) -> tuple[QuotationEvent | None, Transition | None, str | None]:
    try:
        event = QuotationEvent(event)
    except ValueError:
        return None, None, f"Unknown event '{event}'"
    transition = TRANSITIONS.get((context.state, event))
    if transition is None:
        return event, None, f"Event '{event.value}' is not valid in state '{context.state.value}'"
    return event, transition, None


def can_transition(context: QuotationContext, event, now: datetime | None = None) -> TransitionResult:
    """Pre-check an event without producing a new context."""
    event, transition, reason = _resolve(context, event)
    if reason:
        return TransitionResult(valid=False, reason=reason)
    if transition.guard and not GUARDS[transition.guard](context, now or utcnow()):
        return TransitionResult(valid=False, reason=GUARD_REASONS[transition.guard])
    return TransitionResult(valid=True)


def transition(
    context: QuotationContext,
    event,
    payload: dict | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Dispatch one event. Returns the committed context or the rejection reason."""
    now = now or utcnow()
    payload = dict(payload or {})

    event, rule, reason = _resolve(context, event)
    if reason:
        logger.warning("Transition rejected: {}", reason, quotation_id=context.id)
        return TransitionResult(valid=False, reason=reason)

    if rule.guard and not GUARDS[rule.guard](context, now):
        reason = GUARD_REASONS[rule.guard]
        logger.warning("Guard {} failed for {} on {}: {}", rule.guard, event.value, context.id, reason)
        return TransitionResult(valid=False, reason=reason)

    try:
        updates: dict[str, Any] = {}
        for action in rule.actions:
            updates.update(action(context, payload, now))

        entry = HistoryEntry(
            previous_state=context.state,
            state=rule.target,
            event=event,
            timestamp=now,
            payload={k: v for k, v in payload.items() if k not in _HISTORY_OMIT} or None,
        )
        # model_copy skips validation; payload-sourced fields must be checked here
        committed = QuotationContext.model_validate({
            **context.model_dump(exclude={"history", "quoted_total"}),
            **updates,
            "state": rule.target,
            "updated_at": now,
            "history": context.history + (entry,),
        })
    except (PydanticValidationError, ValueError, TypeError) as e:
        reason = f"Invalid payload for {event.value}: {e}"
        logger.warning("Transition rejected for {}: {}", context.id, reason)
        return TransitionResult(valid=False, reason=reason)

    logger.info(
        "Quotation {} {} -> {} via {}",
        context.id, context.state.value, rule.target.value, event.value,
    )
    return TransitionResult(valid=True, context=committed)
