"""
schemas/quotation.py — Quotation aggregate value types

The quotation context is an immutable pydantic model: every transition
produces a new instance via model_copy(update=...). quoted_total is a
computed field so it can never drift from the quoted items.

Called by: services/quotation_machine.py, services/workflow_service.py, routers
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class QuotationState(str, Enum):
    IDLE = "idle"
    DRAFT = "draft"
    SENDING = "sending"
    SENT = "sent"
    WAITING_REPLY = "waitingReply"
    REPLIED = "replied"
    ANALYZING = "analyzing"
    QUOTED = "quoted"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    ERROR = "error"


class QuotationEvent(str, Enum):
    CREATE_DRAFT = "CREATE_DRAFT"
    SEND = "SEND"
    SEND_SUCCESS = "SEND_SUCCESS"
    SEND_ERROR = "SEND_ERROR"
    RECEIVE_REPLY = "RECEIVE_REPLY"
    EXPIRE = "EXPIRE"
    ANALYZE = "ANALYZE"
    ANALYSIS_SUCCESS = "ANALYSIS_SUCCESS"
    ANALYSIS_ERROR = "ANALYSIS_ERROR"
    CONFIRM = "CONFIRM"
    CONFIRM_SUCCESS = "CONFIRM_SUCCESS"
    CONFIRM_ERROR = "CONFIRM_ERROR"
    DELIVER = "DELIVER"
    DELIVER_SUCCESS = "DELIVER_SUCCESS"
    CANCEL = "CANCEL"
    RETRY = "RETRY"
    RESET = "RESET"


class QuotationItem(BaseModel):
    """A requested line. Validation is left to the canSend guard."""
    model_config = ConfigDict(frozen=True)

    id: str = ""
    name: str = ""
    quantity_to_order: float = 0
    unit: str = ""
    category: str | None = None
    current_price: float | None = None


class QuotedItem(QuotationItem):
    unit_price: float = 0
    total_price: float = 0
    price_change_pct: float | None = None


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    retryable: bool = False


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous_state: QuotationState
    state: QuotationState
    event: QuotationEvent
    timestamp: datetime
    payload: dict[str, Any] | None = None


class QuotationContext(BaseModel):
    """The quotation aggregate root.

    pending / previous_state are the optimistic in-flight marker and the
    snapshot of the state the in-flight event left from.
    """
    model_config = ConfigDict(frozen=True)

    # Identity
    id: str
    state: QuotationState = QuotationState.IDLE
    created_at: datetime
    updated_at: datetime

    # Supplier
    supplier_id: str = ""
    supplier_name: str = ""
    supplier_email: str = ""

    # Items
    items: tuple[QuotationItem, ...] = ()
    quoted_items: tuple[QuotedItem, ...] = ()

    # Email
    email_subject: str | None = None
    message_id: str | None = None
    reply_body: str | None = None
    reply_from: str | None = None
    reply_subject: str | None = None
    reply_message_id: str | None = None

    # Timeline
    sent_at: datetime | None = None
    replied_at: datetime | None = None
    analyzed_at: datetime | None = None
    confirmed_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    expires_at: datetime | None = None

    # Terms & delivery
    delivery_date: str | None = None
    payment_terms: str | None = None
    invoice_number: str | None = None
    delivery_notes: str | None = None
    ai_confidence: float | None = None

    # Cancellation
    cancellation_reason: str | None = None
    cancelled_by: str | None = None

    # Error handling
    error: ErrorInfo | None = None
    retry_count: int = Field(default=0, ge=0)

    # Optimistic in-flight marker
    pending: bool = False
    previous_state: QuotationState | None = None

    history: tuple[HistoryEntry, ...] = ()

    @computed_field
    @property
    def quoted_total(self) -> float:
        return sum(item.total_price for item in self.quoted_items)


class TransitionResult(BaseModel):
    """Outcome of dispatching one event. Invalid events never raise."""

    valid: bool
    reason: str | None = None
    context: QuotationContext | None = None
