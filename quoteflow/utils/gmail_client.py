"""Gmail API client — retry wrapper and connection health.

Usage:
    from quoteflow.utils.gmail_client import GmailClient, MailboxConnection
    conn = MailboxConnection.from_settings()
    if await conn.ensure_valid():
        gc = GmailClient(conn.access_token)
        hits = await gc.search("(from:a@b.com) after:2026/01/31", max_results=20)
        message = await gc.fetch(hits[0]["id"])
"""

import asyncio
from datetime import datetime, timedelta

import httpx
from loguru import logger

from ..config import settings
from ..exceptions import MailboxError
from ..http_client import http
from . import parse_datetime, utcnow

TOKEN_URL = "https://oauth2.googleapis.com/token"

MAX_RETRIES = 3
BACKOFF_BASE = 2  # seconds, exponential: 2, 4, 8
EXPIRY_BUFFER = timedelta(minutes=5)


class GmailClient:
    """Thin wrapper around the Gmail REST API with retry on 429 / 5xx."""

    def __init__(self, access_token: str, client: httpx.AsyncClient | None = None,
                 base_url: str | None = None):
        self.token = access_token
        self.client = client or http
        self.base_url = (base_url or settings.gmail_api_base).rstrip("/")
        self._headers = {"Authorization": f"Bearer {access_token}"}

    async def search(self, query: str, max_results: int | None = None) -> list[dict]:
        """Message stubs ({id, threadId}) matching a Gmail search query."""
        params = {"q": query, "maxResults": max_results or settings.reply_search_max_results}
        data = await self._request("GET", "/messages", params=params)
        return data.get("messages") or []

    async def fetch(self, message_id: str) -> dict:
        """Full message: {id, threadId, snippet, internalDate, payload}."""
        return await self._request("GET", f"/messages/{message_id}", params={"format": "full"})

    async def send_raw(self, raw: str, thread_id: str | None = None) -> dict:
        """Send a base64url-encoded RFC 822 message. Returns {id, threadId, labelIds}."""
        body = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        return await self._request("POST", "/messages/send", json_data=body)

    async def profile(self) -> dict:
        return await self._request("GET", "/profile")

    # ── Internal retry logic ────────────────────────────────────────

    async def _request(self, method: str, path: str, params: dict | None = None,
                       json_data: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES + 1):
            try:
                if method == "GET":
                    resp = await self.client.get(url, params=params, headers=self._headers)
                else:
                    resp = await self.client.post(url, json=json_data, headers=self._headers)

                if resp.status_code in (200, 201):
                    return resp.json()
                if resp.status_code in (202, 204):
                    return {}

                if resp.status_code == 429 and attempt < MAX_RETRIES:
                    wait = int(resp.headers.get("Retry-After", BACKOFF_BASE ** (attempt + 1)))
                    logger.warning("Gmail 429 — retry in {}s (attempt {})", wait, attempt + 1)
                    await asyncio.sleep(wait)
                    continue

                if resp.status_code >= 500 and attempt < MAX_RETRIES:
                    wait = BACKOFF_BASE ** (attempt + 1)
                    logger.warning("Gmail {} — retry in {}s (attempt {})", resp.status_code, wait, attempt + 1)
                    await asyncio.sleep(wait)
                    continue

                logger.error("Gmail {}: {}", resp.status_code, resp.text[:300])
                raise MailboxError(resp.status_code, resp.text[:300])

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = e
                if attempt == MAX_RETRIES:
                    break
                wait = BACKOFF_BASE ** (attempt + 1)
                logger.warning("Gmail connection error — retry in {}s: {}", wait, e)
                await asyncio.sleep(wait)

        logger.error("Gmail request failed after {} retries: {}", MAX_RETRIES, url)
        raise MailboxError(0, str(last_error) if last_error else "All retries exhausted")


class MailboxConnection:
    """Access token + expiry for the connected mailbox.

    is_valid() is the cheap pre-poll health check; ensure_valid() also
    refreshes through Google's token endpoint when a refresh token exists.
    """

    def __init__(self, access_token: str = "", expires_at: datetime | None = None,
                 refresh_token: str = "", client_id: str = "", client_secret: str = "",
                 email: str = "", client: httpx.AsyncClient | None = None):
        self.access_token = access_token
        self.expires_at = parse_datetime(expires_at)
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.email = (email or "").strip().lower()
        self.client = client or http
        self.last_error: str | None = None

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient | None = None) -> "MailboxConnection":
        return cls(
            access_token=settings.gmail_access_token,
            expires_at=settings.gmail_token_expires_at,
            refresh_token=settings.gmail_refresh_token,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            email=settings.gmail_user_email,
            client=client,
        )

    def is_valid(self, now: datetime | None = None) -> bool:
        """Token present and not within 5 minutes of expiry. No expiry → trusted."""
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return (now or utcnow()) < self.expires_at - EXPIRY_BUFFER

    async def ensure_valid(self) -> bool:
        if self.is_valid():
            return True
        return await self.refresh()

    async def refresh(self) -> bool:
        if not self.refresh_token:
            self.last_error = "No refresh token"
            return False
        try:
            r = await self.client.post(
                TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=15,
            )
        except httpx.HTTPError as e:
            self.last_error = f"Token refresh error: {e}"
            logger.warning("Gmail token refresh error: {}", e)
            return False

        if r.status_code != 200:
            self.last_error = f"Token refresh failed: {r.status_code}"
            logger.warning("Gmail token refresh failed: {} — {}", r.status_code, r.text[:200])
            return False

        tokens = r.json()
        self.access_token = tokens.get("access_token") or ""
        self.expires_at = utcnow() + timedelta(seconds=int(tokens.get("expires_in") or 3600))
        if tokens.get("refresh_token"):
            self.refresh_token = tokens["refresh_token"]
        self.last_error = None
        logger.info("Gmail token refreshed for {}", self.email or "mailbox")
        return bool(self.access_token)

    def disconnect(self, reason: str):
        """Forget the access token after the API rejected it (401)."""
        logger.warning("Mailbox disconnected: {}", reason)
        self.access_token = ""
        self.expires_at = None
        self.last_error = reason

    def client_for(self) -> GmailClient:
        return GmailClient(self.access_token, client=self.client)
