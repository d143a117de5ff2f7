"""
schemas/api.py — Request/response models for the quotation API

Business Rules:
- Supplier email is trimmed but not otherwise validated here; the SEND
  guard decides whether a draft is sendable
- Raw event dispatch accepts any event name; the state machine rejects
  unknown or out-of-state events with a 400
- Error responses share the ErrorResponse shape

Called by: routers/quotations.py, main.py
Depends on: pydantic
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class ErrorResponse(BaseModel):
    error: str
    status_code: int
    detail: dict | list | None = None


class SupplierIn(BaseModel):
    id: str = ""
    name: str = ""
    email: str = ""

    @field_validator("email")
    @classmethod
    def strip_email(cls, v: str) -> str:
        return v.strip()


class ItemIn(BaseModel):
    id: str
    name: str
    quantity_to_order: float = 0
    unit: str = ""
    category: str | None = None
    current_price: float | None = None


class QuotationCreate(BaseModel):
    """Create a draft quotation for one supplier."""
    supplier: SupplierIn
    items: list[ItemIn] = Field(default_factory=list)


class EventIn(BaseModel):
    """Raw event dispatch: {type, payload}."""
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def upper_type(cls, v: str) -> str:
        return v.strip().upper()


class CancelIn(BaseModel):
    reason: str | None = None
    cancelled_by: str | None = None


class DeliverIn(BaseModel):
    invoice_number: str | None = None
    notes: str | None = None


class TransitionOut(BaseModel):
    valid: bool
    reason: str | None = None
    quotation: dict | None = None
