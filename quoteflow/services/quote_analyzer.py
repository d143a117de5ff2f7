"""
quote_analyzer.py — Extract priced lines from a supplier reply

Purpose:
  Turn the clean body of a supplier's reply into quoted items matched
  against the items we asked for, plus delivery date, payment terms and
  a confidence score.

Design rules:
  - The LLM only ever sees the extracted body text and our item names,
    never raw headers
  - Extracted lines are matched to requested items by name (exact, then
    containment, case-insensitive); unmatched lines are dropped
  - total_price = unit_price * quantity_to_order when the reply omits it
  - price_change_pct is relative to the item's current_price, if known
  - confidence is clamped to [0, 1]
  - No API key / failed call → SyncError(UNAVAILABLE); nothing usable
    in the reply → SyncError(INVALID_ARGUMENT)

Called by: services/workflow_service.py (ANALYZE flow)
Depends on: utils/claude_client.py
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from ..config import settings
from ..exceptions import SyncError
from ..schemas.quotation import QuotationItem
from ..utils import safe_float
from ..utils.claude_client import claude_structured, safe_json_parse

MAX_BODY_CHARS = 4000

SYSTEM_PROMPT = """\
You extract quoted prices from supplier emails replying to a request for quotation.

Rules:
- Only report items the supplier actually priced
- Use the item names from the requested list when the supplier refers to them
- unit_price is the price per single unit; total_price only if stated
- delivery_date and payment_terms exactly as the supplier wrote them, or null
- confidence between 0 and 1: how sure you are the prices are correct"""

QUOTE_SCHEMA = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "unit_price": {"type": "number"},
                    "quantity": {"type": ["number", "null"]},
                    "total_price": {"type": ["number", "null"]},
                },
                "required": ["name", "unit_price"],
            },
        },
        "delivery_date": {"type": ["string", "null"]},
        "payment_terms": {"type": ["string", "null"]},
        "confidence": {"type": "number"},
    },
    "required": ["items", "confidence"],
}


def _build_prompt(raw_body: str, items: list[QuotationItem]) -> str:
    requested = "\n".join(
        f"- {item.name} (qty {item.quantity_to_order:g} {item.unit})".rstrip()
        for item in items
    )
    return (
        f"Requested items:\n{requested}\n\n"
        f"Supplier reply:\n{raw_body[:MAX_BODY_CHARS]}"
    )


def _match_item(name: str, items: list[QuotationItem]) -> QuotationItem | None:
    needle = (name or "").strip().lower()
    if not needle:
        return None
    for item in items:
        if item.name.strip().lower() == needle:
            return item
    for item in items:
        candidate = item.name.strip().lower()
        if candidate and (candidate in needle or needle in candidate):
            return item
    return None


def clamp_confidence(value) -> float:
    conf = safe_float(value)
    if conf is None:
        return 0.5
    return max(0.0, min(1.0, conf))


def normalize_analysis(result: dict[str, Any], items: list[QuotationItem]) -> dict:
    """LLM output → {quoted_items, delivery_date, payment_terms, confidence}."""
    lines = result.get("items") or []
    if isinstance(lines, str):
        lines = safe_json_parse(lines) or []

    quoted: list[dict] = []
    seen: set[str] = set()
    for line in lines:
        if not isinstance(line, dict):
            continue
        item = _match_item(line.get("name", ""), items)
        unit_price = safe_float(line.get("unit_price"))
        if item is None or unit_price is None or item.id in seen:
            continue
        seen.add(item.id)

        total = safe_float(line.get("total_price"))
        if total is None:
            total = unit_price * item.quantity_to_order

        change = None
        if item.current_price:
            change = round((unit_price - item.current_price) / item.current_price * 100, 2)

        quoted.append({
            **item.model_dump(),
            "unit_price": unit_price,
            "total_price": round(total, 2),
            "price_change_pct": change,
        })

    return {
        "quoted_items": quoted,
        "delivery_date": result.get("delivery_date") or None,
        "payment_terms": result.get("payment_terms") or None,
        "confidence": clamp_confidence(result.get("confidence")),
    }


class QuoteAnalyzer:
    """Analyzer collaborator backed by Claude structured output."""

    def __init__(self, model_tier: str | None = None):
        self.model_tier = model_tier or settings.analyzer_model_tier

    @property
    def configured(self) -> bool:
        return bool(settings.anthropic_api_key)

    async def analyze(self, raw_body: str, items: list[QuotationItem]) -> dict:
        if not self.configured:
            raise SyncError("UNAVAILABLE", "Analyzer is not configured (no API key)")
        if not raw_body or not raw_body.strip():
            raise SyncError("INVALID_ARGUMENT", "Reply body is empty")

        result = await claude_structured(
            _build_prompt(raw_body, list(items)),
            QUOTE_SCHEMA,
            system=SYSTEM_PROMPT,
            model_tier=self.model_tier,
        )
        if not result:
            raise SyncError("UNAVAILABLE", "Analyzer returned no result")

        analysis = normalize_analysis(result, list(items))
        if not analysis["quoted_items"]:
            raise SyncError("INVALID_ARGUMENT", "No priced items found in the reply")

        logger.info(
            "Reply analyzed: {} priced item(s), confidence {}",
            len(analysis["quoted_items"]), analysis["confidence"],
        )
        return analysis
