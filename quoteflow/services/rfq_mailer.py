"""
rfq_mailer.py — Compose and send the request-for-quotation email

Business Rules:
- Subject: "RFQ: <first three items> (+N more)"; body lists every item with
  quantity and unit, then the questions we need answered
- Sent through the connected Gmail mailbox as a base64url RFC 822 message
- Recipient without "@" → SyncError(INVALID_ARGUMENT), nothing is sent
- Mailbox HTTP failures are translated to SyncError codes so the
  optimistic coordinator can tell retryable from permanent failures

Called by: services/workflow_service.py (SEND flow)
Depends on: utils/gmail_client.py
"""

import base64
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from loguru import logger

from ..config import settings
from ..exceptions import MailboxError, SyncError
from ..schemas.quotation import QuotationContext
from ..utils import utcnow
from ..utils.gmail_client import MailboxConnection

_STATUS_CODES = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "ALREADY_EXISTS",
}


def mailbox_error_to_sync(error: MailboxError) -> SyncError:
    code = _STATUS_CODES.get(error.status, "UNAVAILABLE")
    return SyncError(code, error.message)


def _format_qty(value: float) -> str:
    return f"{int(value):,}" if float(value).is_integer() else f"{value:,}"


def generate_rfq_draft(context: QuotationContext, sender_name: str = "") -> tuple[str, str]:
    """Generate a professional RFQ email for a quotation."""
    names = [item.name for item in context.items]
    subject = f"RFQ: {', '.join(names[:3])}" + (f" (+{len(names) - 3} more)" if len(names) > 3 else "")

    lines = []
    for item in context.items:
        unit = f" {item.unit}" if item.unit else ""
        lines.append(f"  • {item.name}  —  Qty: {_format_qty(item.quantity_to_order)}{unit}")

    greeting = f"Hi {context.supplier_name}," if context.supplier_name else "Hi,"
    body = f"""{greeting}

We would like a quotation for the following item(s):

{chr(10).join(lines)}

Could you please provide:
  1. Unit price for each item
  2. Delivery date
  3. Payment terms

Please reply to this email at your earliest convenience.

Best regards,
{sender_name}"""

    return subject, body


class RfqMailer:
    """Sends RFQ emails through the connected mailbox."""

    def __init__(self, connection: MailboxConnection, sender_name: str | None = None):
        self.connection = connection
        self.sender_name = sender_name if sender_name is not None else settings.sender_name

    def build_message(self, context: QuotationContext) -> tuple[str, str]:
        """Returns (subject, base64url raw message)."""
        subject, body = generate_rfq_draft(context, self.sender_name)
        msg = EmailMessage()
        msg["To"] = formataddr((context.supplier_name, context.supplier_email.strip()))
        if self.connection.email:
            msg["From"] = formataddr((self.sender_name, self.connection.email))
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=(self.connection.email.partition("@")[2] or None))
        msg.set_content(body)
        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
        return subject, raw

    async def send(self, context: QuotationContext) -> dict:
        """Send the RFQ. Returns {message_id, sent_at, subject}."""
        recipient = (context.supplier_email or "").strip()
        if "@" not in recipient:
            raise SyncError("INVALID_ARGUMENT", f"Invalid supplier email: {recipient!r}")

        if not await self.connection.ensure_valid():
            raise SyncError("UNAUTHENTICATED", "Mailbox is not connected")

        subject, raw = self.build_message(context)
        try:
            sent = await self.connection.client_for().send_raw(raw)
        except MailboxError as e:
            if e.status == 401:
                self.connection.disconnect("Gmail rejected the access token")
            raise mailbox_error_to_sync(e) from e

        message_id = sent.get("id")
        logger.info("RFQ sent for {} to {} (message {})", context.id, recipient, message_id)
        return {
            "message_id": message_id,
            "sent_at": utcnow(),
            "subject": subject,
        }
