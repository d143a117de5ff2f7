"""Tests for the RFQ mailer — draft text, raw message, mailbox error mapping."""

import base64
from email import message_from_bytes
from unittest.mock import AsyncMock, MagicMock

import pytest

from quoteflow.exceptions import MailboxError, SyncError
from quoteflow.services.rfq_mailer import RfqMailer, generate_rfq_draft, mailbox_error_to_sync
from tests.conftest import make_draft


def _connection(valid=True, send_result=None, send_error=None):
    conn = MagicMock()
    conn.email = "buyer@ourco.com"
    conn.ensure_valid = AsyncMock(return_value=valid)
    gmail = MagicMock()
    gmail.send_raw = AsyncMock(return_value=send_result or {"id": "gm-1"}, side_effect=send_error)
    conn.client_for.return_value = gmail
    return conn, gmail


def test_generate_rfq_draft_lists_items():
    subject, body = generate_rfq_draft(make_draft(), "Ana Buyer")
    assert subject == "RFQ: Widget 1, Widget 2"
    assert "Hi Acme," in body
    assert "Widget 1  —  Qty: 10 pcs" in body
    assert "Widget 2  —  Qty: 20 pcs" in body
    assert body.rstrip().endswith("Ana Buyer")


def test_generate_rfq_draft_subject_truncates():
    items = [{"id": f"i{n}", "name": f"Part {n}", "quantity_to_order": 1.5} for n in range(5)]
    subject, body = generate_rfq_draft(make_draft(items=items))
    assert subject == "RFQ: Part 0, Part 1, Part 2 (+2 more)"
    assert "Qty: 1.5" in body


def test_build_message_is_rfc822():
    conn, _ = _connection()
    subject, raw = RfqMailer(conn, sender_name="Purchasing").build_message(make_draft())
    parsed = message_from_bytes(base64.urlsafe_b64decode(raw))
    assert parsed["To"] == "Acme <sales@acme.com>"
    assert parsed["From"] == "Purchasing <buyer@ourco.com>"
    assert parsed["Subject"] == subject
    assert "Widget 1" in parsed.get_payload(decode=True).decode()


@pytest.mark.asyncio
async def test_send_returns_message_id():
    conn, gmail = _connection()
    result = await RfqMailer(conn, "Purchasing").send(make_draft())
    assert result["message_id"] == "gm-1"
    assert result["sent_at"] is not None
    gmail.send_raw.assert_awaited_once()


@pytest.mark.asyncio
async def test_send_invalid_recipient():
    conn, gmail = _connection()
    with pytest.raises(SyncError) as exc:
        await RfqMailer(conn).send(make_draft(email="not-an-address"))
    assert exc.value.code == "INVALID_ARGUMENT"
    gmail.send_raw.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_without_connection_unauthenticated():
    conn, _ = _connection(valid=False)
    with pytest.raises(SyncError) as exc:
        await RfqMailer(conn).send(make_draft())
    assert exc.value.code == "UNAUTHENTICATED"
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_send_401_disconnects():
    conn, _ = _connection(send_error=MailboxError(401, "bad token"))
    with pytest.raises(SyncError) as exc:
        await RfqMailer(conn).send(make_draft())
    assert exc.value.code == "UNAUTHENTICATED"
    conn.disconnect.assert_called_once()


@pytest.mark.parametrize("status,code,retryable", [
    (400, "INVALID_ARGUMENT", False),
    (403, "PERMISSION_DENIED", False),
    (404, "NOT_FOUND", False),
    (500, "UNAVAILABLE", True),
    (0, "UNAVAILABLE", True),
])
def test_mailbox_error_mapping(status, code, retryable):
    error = mailbox_error_to_sync(MailboxError(status, "x"))
    assert error.code == code
    assert error.retryable is retryable
