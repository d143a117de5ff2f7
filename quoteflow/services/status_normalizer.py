"""Status normalizer — map legacy, translated and vendor status tokens to QuotationState.

Records imported from older stores, supplier portals or translated UIs carry
statuses like "email_sent", "Aguardando" or "order-placed". This module is a
pure lookup table; unknown tokens pass through unchanged (trimmed) so that
callers can decide what to do with them. The repository runs every stored
state through normalize_status() on load and queries by status_tokens().
"""

from ..schemas.quotation import QuotationState

S = QuotationState

_STATUS_MAP: dict[str, QuotationState] = {
    # Canonical names (lowercased)
    **{state.value.lower(): state for state in QuotationState},
    # Draft / not yet sent
    "new": S.DRAFT,
    "created": S.DRAFT,
    "pending": S.DRAFT,
    "pendente": S.DRAFT,
    "rascunho": S.DRAFT,
    # In transit
    "sending_email": S.SENDING,
    "enviando": S.SENDING,
    # Sent
    "email_sent": S.SENT,
    "emailsent": S.SENT,
    "enviado": S.SENT,
    # Waiting on the supplier
    "awaiting": S.WAITING_REPLY,
    "awaiting_response": S.WAITING_REPLY,
    "awaitingresponse": S.WAITING_REPLY,
    "awaiting_reply": S.WAITING_REPLY,
    "waiting": S.WAITING_REPLY,
    "waiting_reply": S.WAITING_REPLY,
    "aguardando": S.WAITING_REPLY,
    # Reply received
    "response_received": S.REPLIED,
    "reply_received": S.REPLIED,
    "respondido": S.REPLIED,
    # Analysis
    "processing": S.ANALYZING,
    "analysing": S.ANALYZING,
    # Priced
    "quote_received": S.QUOTED,
    "quotereceived": S.QUOTED,
    "cotado": S.QUOTED,
    "priced": S.QUOTED,
    # Confirmed / ordered
    "ordered": S.CONFIRMED,
    "order_placed": S.CONFIRMED,
    "orderplaced": S.CONFIRMED,
    "accepted": S.CONFIRMED,
    "approved": S.CONFIRMED,
    "confirmado": S.CONFIRMED,
    # Shipping
    "shipped": S.DELIVERING,
    "in_transit": S.DELIVERING,
    # Delivered
    "completed": S.DELIVERED,
    "complete": S.DELIVERED,
    "received": S.DELIVERED,
    "closed": S.DELIVERED,
    "entregue": S.DELIVERED,
    # Cancelled
    "canceled": S.CANCELLED,
    "rejected": S.CANCELLED,
    "declined": S.CANCELLED,
    "cancelado": S.CANCELLED,
    # Expired
    "timed_out": S.EXPIRED,
    "expirado": S.EXPIRED,
    # Error
    "failed": S.ERROR,
    "failure": S.ERROR,
}

_TERMINAL = frozenset({S.DELIVERED, S.CANCELLED, S.EXPIRED})
_ACTIVE = frozenset({
    S.DRAFT, S.SENDING, S.SENT, S.WAITING_REPLY, S.REPLIED,
    S.ANALYZING, S.QUOTED, S.CONFIRMING, S.CONFIRMED, S.DELIVERING,
})

_LABELS = {
    S.IDLE: "New",
    S.DRAFT: "Draft",
    S.SENDING: "Sending",
    S.SENT: "Sent",
    S.WAITING_REPLY: "Awaiting reply",
    S.REPLIED: "Reply received",
    S.ANALYZING: "Analyzing",
    S.QUOTED: "Quoted",
    S.CONFIRMING: "Confirming",
    S.CONFIRMED: "Confirmed",
    S.DELIVERING: "Delivering",
    S.DELIVERED: "Delivered",
    S.CANCELLED: "Cancelled",
    S.EXPIRED: "Expired",
    S.ERROR: "Error",
}


def _token(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def normalize_status(value) -> QuotationState | str:
    """Return the canonical state for a status token.

    None or blank → idle. Unrecognized tokens are returned trimmed but
    otherwise unchanged.
    """
    if isinstance(value, QuotationState):
        return value
    if value is None or not str(value).strip():
        return S.IDLE
    raw = str(value).strip()
    return _STATUS_MAP.get(_token(raw), raw)


def is_terminal_status(value) -> bool:
    return normalize_status(value) in _TERMINAL


def is_active_status(value) -> bool:
    return normalize_status(value) in _ACTIVE


def status_label(value) -> str:
    state = normalize_status(value)
    if isinstance(state, QuotationState):
        return _LABELS[state]
    return state


def status_tokens(state: QuotationState) -> set[str]:
    """Every lowercased stored spelling that normalizes to `state`."""
    tokens = {token for token, mapped in _STATUS_MAP.items() if mapped == state}
    tokens |= {t.replace("_", "-") for t in tokens} | {t.replace("_", " ") for t in tokens}
    return tokens
