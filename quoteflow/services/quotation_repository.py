"""
quotation_repository.py — Persistence sync collaborator for quotations

Stores the latest QuotationContext snapshot plus an append-only history
table. The stored history length doubles as the record version, so a
writer holding a stale context is detected without extra bookkeeping.

Business Rules:
- sync() appends only history entries not yet stored; stored rows are
  never updated or deleted
- Stored history longer than the incoming context → FAILED_PRECONDITION
  ("version mismatch"), classified as a conflict by the coordinator
- Incoming history that disagrees with the stored prefix → INVALID_ARGUMENT
- SQLAlchemy OperationalError → UNAVAILABLE (retryable)
- Stored status tokens (snapshot state, history states, the state column
  in queries) go through the status normalizer, so imported records with
  "email_sent" or "awaiting" load as sent / waitingReply; a token with no
  mapping raises UnknownStatusError on get() and is skipped by list queries
- A mailbox reply id is recorded once; is_reply_processed() guards re-use

Called by: services/workflow_service.py, services/reply_correlator.py
Depends on: models/quotations.py, database.py, services/status_normalizer.py
"""

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from ..database import SessionLocal
from ..exceptions import ConflictError, RetryableSyncError, SyncError, UnknownStatusError
from ..models import ProcessedReply, QuotationHistoryRecord, QuotationRecord
from ..schemas.quotation import HistoryEntry, QuotationContext, QuotationState
from .status_normalizer import normalize_status, status_tokens

_AWAITING_REPLY = status_tokens(QuotationState.SENT) | status_tokens(QuotationState.WAITING_REPLY)


def context_to_record_data(context: QuotationContext) -> dict:
    return context.model_dump(mode="json", exclude={"history", "quoted_total"})


def canonical_state(value, quotation_id: str) -> QuotationState:
    """Stored status token → QuotationState; unmapped tokens are rejected."""
    state = normalize_status(value)
    if not isinstance(state, QuotationState):
        raise UnknownStatusError(quotation_id, value)
    return state


def record_to_context(record: QuotationRecord) -> QuotationContext:
    data = dict(record.context or {})
    data["state"] = canonical_state(data.get("state", record.state), record.id)
    if data.get("previous_state") is not None:
        data["previous_state"] = canonical_state(data["previous_state"], record.id)
    history = [
        HistoryEntry(
            previous_state=canonical_state(row.previous_state, record.id),
            state=canonical_state(row.state, record.id),
            event=row.event,
            timestamp=row.timestamp,
            payload=row.payload,
        )
        for row in record.history
    ]
    return QuotationContext.model_validate({**data, "history": history})


class QuotationRepository:
    """Session-per-call repository; safe to share between requests and the poller."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    # ── Sync collaborator ────────────────────────────────────────────

    async def sync(self, context: QuotationContext) -> QuotationContext:
        """Persist a committed context. Raises SyncError subclasses on failure."""
        return self.save(context)

    def save(self, context: QuotationContext) -> QuotationContext:
        db = self.session_factory()
        try:
            record = db.get(QuotationRecord, context.id)
            stored = record.version if record else 0
            incoming = len(context.history)

            if stored > incoming:
                raise ConflictError(
                    f"version mismatch: {context.id} has {stored} stored transitions, "
                    f"context carries {incoming}"
                )
            if record is not None:
                for row, entry in zip(record.history, context.history[:stored]):
                    stored_states = (normalize_status(row.state), normalize_status(row.previous_state))
                    if (row.event, *stored_states) != (entry.event.value, entry.state, entry.previous_state):
                        raise SyncError(
                            "INVALID_ARGUMENT",
                            f"history of {context.id} diverges at seq {row.seq}",
                            400,
                        )
            else:
                record = QuotationRecord(id=context.id, created_at=context.created_at)
                db.add(record)

            for seq, entry in enumerate(context.history[stored:], start=stored):
                record.history.append(QuotationHistoryRecord(
                    seq=seq,
                    previous_state=entry.previous_state.value,
                    state=entry.state.value,
                    event=entry.event.value,
                    timestamp=entry.timestamp,
                    payload=entry.model_dump(mode="json")["payload"],
                ))

            record.state = context.state.value
            record.supplier_email = (context.supplier_email or "").strip().lower() or None
            record.sent_at = context.sent_at
            record.version = incoming
            record.context = context_to_record_data(context)
            record.updated_at = context.updated_at
            db.commit()
            logger.debug("Synced {} at version {} ({})", context.id, incoming, context.state.value)
            return context
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"concurrent modification of {context.id}") from e
        except OperationalError as e:
            db.rollback()
            logger.warning("Database unavailable while syncing {}: {}", context.id, e)
            raise RetryableSyncError(f"database unavailable: {e.orig}") from e
        except SyncError:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, quotation_id: str) -> QuotationContext | None:
        db = self.session_factory()
        try:
            record = db.get(QuotationRecord, quotation_id)
            return record_to_context(record) if record else None
        finally:
            db.close()

    def list_all(self, state: str | None = None) -> list[QuotationContext]:
        """All readable quotations, newest first. `state` may be a legacy token."""
        db = self.session_factory()
        try:
            query = select(QuotationRecord).order_by(QuotationRecord.created_at.desc())
            if state:
                target = normalize_status(state)
                if not isinstance(target, QuotationState):
                    return []
                query = query.where(func.lower(QuotationRecord.state).in_(status_tokens(target)))
            return self._readable(db.scalars(query))
        finally:
            db.close()

    def list_awaiting_reply(self) -> list[QuotationContext]:
        """Quotations in sent/waitingReply, oldest send first."""
        db = self.session_factory()
        try:
            query = (
                select(QuotationRecord)
                .where(func.lower(QuotationRecord.state).in_(_AWAITING_REPLY))
                .order_by(QuotationRecord.sent_at.asc())
            )
            return self._readable(db.scalars(query))
        finally:
            db.close()

    @staticmethod
    def _readable(records) -> list[QuotationContext]:
        # Unreadable records are logged and skipped
        contexts = []
        for record in records:
            try:
                contexts.append(record_to_context(record))
            except (UnknownStatusError, PydanticValidationError) as e:
                logger.error("Skipping unreadable quotation {}: {}", record.id, e)
        return contexts

    # ── Reply dedup ──────────────────────────────────────────────────

    def is_reply_processed(self, message_id: str) -> bool:
        if not message_id:
            return False
        db = self.session_factory()
        try:
            return db.get(ProcessedReply, message_id) is not None
        finally:
            db.close()

    def mark_reply_processed(self, message_id: str, quotation_id: str, from_email: str | None = None) -> bool:
        """Record a reply id. Returns False if it was already recorded."""
        db = self.session_factory()
        try:
            if db.get(ProcessedReply, message_id) is not None:
                return False
            db.add(ProcessedReply(
                message_id=message_id,
                quotation_id=quotation_id,
                from_email=from_email,
            ))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()
