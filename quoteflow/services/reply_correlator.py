"""
reply_correlator.py — Match supplier replies in the mailbox to pending quotations

Flow per cycle:
  1. Health check: skip the whole cycle when the mailbox token is not valid
  2. Pending = quotations in sent / waitingReply with a supplier email
  3. Search "(from:a OR from:b) after:<oldest sentAt>" (max 20 hits)
  4. Fetch up to 10 messages, extract From/Subject/Date and the clean body
  5. Match sender → quotation: exact address first, then domain
  6. RECEIVE_REPLY, mark the message processed, then run the ANALYZE flow

Business Rules:
- Exact matches beat domain matches across all pending quotations; among
  equal ranks the quotation sent earliest wins. Several pending
  quotations on one supplier domain can therefore be matched to the
  wrong one; this is a known limitation of address-based matching
- Messages received before the candidate quotation was sent are ignored
- A message id is applied at most once (processed_replies table)
- Our own address is never treated as a supplier reply
- Unmatched messages are ignored; one failing message never aborts the cycle
- A 401 from the mailbox disconnects it until the token is refreshed

Called by: main.py (ReplyPoller), routers/quotations.py (manual poll)
Depends on: services/workflow_service.py, utils/gmail_client.py, utils/mime.py
"""

import asyncio
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx
from loguru import logger

from ..config import settings
from ..exceptions import MailboxError, QuoteflowError
from ..schemas.quotation import QuotationContext
from ..utils import utc
from ..utils.gmail_client import MailboxConnection
from ..utils.mime import extract_body, extract_headers
from .workflow_service import WorkflowService

_ANGLE_ADDR = re.compile(r"<([^>]+)>")

EXACT = "exact"
DOMAIN = "domain"
_RANK = {EXACT: 0, DOMAIN: 1}


def normalize_email(value: str | None) -> str:
    """'Supplier <Sales@X.com> ' → 'sales@x.com'."""
    if not value:
        return ""
    match = _ANGLE_ADDR.search(value)
    address = match.group(1) if match else value
    return address.strip().lower()


def _domain(address: str) -> str:
    return address.rpartition("@")[2] if "@" in address else ""


def emails_match(a: str | None, b: str | None) -> str | None:
    """'exact', 'domain' or None. Case-insensitive and whitespace-trimmed."""
    left, right = normalize_email(a), normalize_email(b)
    if not left or not right:
        return None
    if left == right:
        return EXACT
    left_domain, right_domain = _domain(left), _domain(right)
    if left_domain and left_domain == right_domain:
        return DOMAIN
    return None


def build_search_query(emails: list[str], after: datetime | None = None) -> str:
    """'(from:a OR from:b) after:YYYY/MM/DD'. Duplicates dropped, order kept."""
    unique: list[str] = []
    for email in emails:
        address = normalize_email(email)
        if address and address not in unique:
            unique.append(address)
    query = "(" + " OR ".join(f"from:{address}" for address in unique) + ")"
    if after is not None:
        query += f" after:{utc(after).strftime('%Y/%m/%d')}"
    return query


def message_received_at(message: dict, date_header: str = "") -> datetime | None:
    """Gmail internalDate (epoch ms), else the Date header."""
    internal = message.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            pass
    if date_header:
        try:
            return utc(parsedate_to_datetime(date_header))
        except (TypeError, ValueError):
            return None
    return None


def match_quotation(sender: str, pending: list[QuotationContext],
                    received_at: datetime | None = None) -> tuple[QuotationContext | None, str | None]:
    """Best pending quotation for a sender: exact over domain, then earliest sent."""
    best: tuple[tuple, QuotationContext, str] | None = None
    for context in pending:
        kind = emails_match(sender, context.supplier_email)
        if kind is None:
            continue
        if received_at and context.sent_at and received_at < context.sent_at:
            continue
        sent = context.sent_at or datetime.max.replace(tzinfo=timezone.utc)
        key = (_RANK[kind], sent)
        if best is None or key < best[0]:
            best = (key, context, kind)
    if best is None:
        return None, None
    return best[1], best[2]


class ReplyCorrelator:
    def __init__(self, service: WorkflowService, connection: MailboxConnection):
        self.service = service
        self.connection = connection

    def pending_quotations(self) -> list[QuotationContext]:
        pending = []
        for stored in self.service.repository.list_awaiting_reply():
            context = self.service.store.get(stored.id) or stored
            if context.state.value in ("sent", "waitingReply") and (context.supplier_email or "").strip():
                pending.append(context)
        return pending

    async def poll_once(self) -> dict:
        """One correlation cycle. Returns {checked, matched, analyzed, skipped, errors}."""
        stats = {"checked": 0, "matched": 0, "analyzed": 0, "skipped": 0, "errors": 0}

        if not await self.connection.ensure_valid():
            logger.debug("Reply poll skipped — mailbox not connected")
            stats["skipped_cycle"] = True
            return stats

        pending = self.pending_quotations()
        if not pending:
            return stats

        sent_times = [ctx.sent_at for ctx in pending if ctx.sent_at]
        query = build_search_query(
            [ctx.supplier_email for ctx in pending],
            min(sent_times) if sent_times else None,
        )
        client = self.connection.client_for()

        try:
            stubs = await client.search(query, settings.reply_search_max_results)
        except MailboxError as e:
            if e.status == 401:
                self.connection.disconnect("Gmail rejected the access token")
            logger.error("Reply search failed: {}", e)
            stats["errors"] += 1
            return stats

        for stub in stubs[: settings.reply_fetch_limit]:
            stats["checked"] += 1
            message_id = stub.get("id")
            try:
                outcome = await self._process_message(client, message_id, pending)
            except (QuoteflowError, httpx.HTTPError) as e:
                logger.error("Reply {} failed: {}", message_id, e)
                stats["errors"] += 1
                continue
            if outcome in stats:
                stats[outcome] += 1
            if outcome == "analyzed":
                stats["matched"] += 1

        logger.info(
            "Reply poll: {checked} checked, {matched} matched, {analyzed} analyzed, "
            "{skipped} skipped, {errors} errors",
            **stats,
        )
        return stats

    async def _process_message(self, client, message_id: str, pending: list[QuotationContext]) -> str | None:
        repository = self.service.repository
        if not message_id or repository.is_reply_processed(message_id):
            return "skipped"

        message = await client.fetch(message_id)
        headers = extract_headers(message.get("payload"))
        sender = normalize_email(headers["from"])
        if not sender or sender == normalize_email(self.connection.email):
            return "skipped"

        received_at = message_received_at(message, headers["date"])
        context, kind = match_quotation(sender, pending, received_at)
        if context is None:
            return None

        body = extract_body(message)
        reply = self.service.record_reply(context.id, {
            "email_body": body,
            "from": sender,
            "received_at": received_at,
            "message_id": message_id,
            "subject": headers["subject"],
        })
        if not reply.valid:
            logger.warning("Reply {} not applied to {}: {}", message_id, context.id, reply.reason)
            return "skipped"

        repository.mark_reply_processed(message_id, context.id, sender)
        pending.remove(context)
        logger.info("Reply {} matched {} ({} match)", message_id, context.id, kind)

        analysis = await self.service.analyze(context.id)
        if analysis.valid:
            return "analyzed"
        logger.warning("Analysis of {} did not complete: {}", context.id, analysis.reason)
        return "matched"


class ReplyPoller:
    """Background task: initial delay, then one correlation cycle per interval."""

    def __init__(self, correlator: ReplyCorrelator, initial_delay: float | None = None,
                 interval: float | None = None):
        self.correlator = correlator
        self.initial_delay = settings.reply_poll_initial_delay_sec if initial_delay is None else initial_delay
        self.interval = settings.reply_poll_interval_sec if interval is None else interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._loop())
            logger.info("Reply poller started — every {}s", self.interval)
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reply poller stopped")

    async def _loop(self):
        await asyncio.sleep(self.initial_delay)
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    async def tick(self):
        try:
            self.correlator.service.expire_overdue()
            await self.correlator.poll_once()
        except Exception as e:
            logger.error("Reply poll error: {}", e)
