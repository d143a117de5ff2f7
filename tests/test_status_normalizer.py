"""Tests for the status normalizer lookup table."""

import pytest

from quoteflow.schemas.quotation import QuotationState as S
from quoteflow.services.status_normalizer import (
    is_active_status,
    is_terminal_status,
    normalize_status,
    status_label,
    status_tokens,
)


@pytest.mark.parametrize("raw,expected", [
    ("draft", S.DRAFT),
    ("waitingReply", S.WAITING_REPLY),
    ("email_sent", S.SENT),
    ("Email-Sent", S.SENT),
    ("  Aguardando ", S.WAITING_REPLY),
    ("awaiting response", S.WAITING_REPLY),
    ("quote_received", S.QUOTED),
    ("Order Placed", S.CONFIRMED),
    ("canceled", S.CANCELLED),
    ("timed-out", S.EXPIRED),
    ("failed", S.ERROR),
])
def test_known_tokens(raw, expected):
    assert normalize_status(raw) == expected


def test_blank_is_idle():
    assert normalize_status(None) == S.IDLE
    assert normalize_status("   ") == S.IDLE


def test_unknown_token_passes_through_trimmed():
    assert normalize_status("  Vendor-Hold ") == "Vendor-Hold"


def test_enum_returned_as_is():
    assert normalize_status(S.QUOTED) is S.QUOTED


def test_terminal_and_active():
    assert is_terminal_status("entregue")
    assert is_terminal_status(S.CANCELLED)
    assert not is_terminal_status("sent")
    assert is_active_status("processing")
    assert not is_active_status("failed")
    assert not is_active_status("mystery")


def test_status_label():
    assert status_label("waitingReply") == "Awaiting reply"
    assert status_label("completed") == "Delivered"
    assert status_label("mystery") == "mystery"


def test_status_tokens_cover_stored_spellings():
    tokens = status_tokens(S.WAITING_REPLY)
    assert {"waitingreply", "awaiting", "awaiting_response", "awaiting-response", "aguardando"} <= tokens
    assert "sent" not in tokens
    assert all(normalize_status(t) == S.WAITING_REPLY for t in tokens)
