"""Quotation models — current snapshot, append-only history, processed replies."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class QuotationRecord(Base):
    """Latest committed context of one quotation.

    `context` holds the full serialized QuotationContext minus history;
    the scalar columns are denormalized for querying. `version` counts
    committed history entries and is the optimistic-concurrency check.
    """

    __tablename__ = "quotations"
    id = Column(String(100), primary_key=True)
    state = Column(String(30), nullable=False, default="idle")
    supplier_email = Column(String(255))
    sent_at = Column(UTCDateTime)
    version = Column(Integer, nullable=False, default=0)
    context = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    history = relationship(
        "QuotationHistoryRecord",
        back_populates="quotation",
        order_by="QuotationHistoryRecord.seq",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_quotations_state", "state"),
        Index("ix_quotations_supplier_email", "supplier_email"),
    )


class QuotationHistoryRecord(Base):
    """One committed transition. Rows are only ever inserted."""

    __tablename__ = "quotation_history"
    id = Column(Integer, primary_key=True)
    quotation_id = Column(
        String(100), ForeignKey("quotations.id", ondelete="CASCADE"), nullable=False
    )
    seq = Column(Integer, nullable=False)
    previous_state = Column(String(30), nullable=False)
    state = Column(String(30), nullable=False)
    event = Column(String(30), nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    payload = Column(JSON)

    quotation = relationship("QuotationRecord", back_populates="history")

    __table_args__ = (
        Index("ix_quotation_history_seq", "quotation_id", "seq", unique=True),
    )


class ProcessedReply(Base):
    """Deduplication — mailbox messages already applied to a quotation."""

    __tablename__ = "processed_replies"
    message_id = Column(String(255), primary_key=True)
    quotation_id = Column(String(100), nullable=False)
    from_email = Column(Text)
    processed_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
