"""
Discord REST client used to verify linked accounts.

The link coordinator only depends on the :class:`VerificationClient`
protocol; :class:`DiscordClient` is the shipped implementation.  It is a
synchronous ``httpx.Client`` wrapper because every call already runs on the
coordinator's worker pool, off any latency-sensitive path.

Behaviour:
    - Every request carries a bounded timeout.  Timeouts, transport errors,
      429 and 5xx responses raise :class:`ExternalServiceUnavailable`.
    - At most ``max_concurrent_requests`` calls are in flight, and successive
      calls are spaced by at least ``min_request_interval_ms``.
    - Successful name lookups are cached for ``cache_minutes``.
    - A refused direct message (closed DMs, blocked bot) is not an error:
      it comes back as ``DeliveryResult(delivered=False, reason=...)``.

Usage:
    with DiscordClient(config.discord) as client:
        account = client.find_account_by_name("alice")
        if account and client.is_member(account.account_id):
            client.send_direct_message(account.account_id, "Your code is 123456")
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from gatehouse.config import DiscordSettings
from gatehouse.discord.models import DiscordErrorBody, DMChannel, GuildMember

logger = logging.getLogger(__name__)

# Discord JSON error code for "Cannot send messages to this user".
_CANNOT_MESSAGE_USER = 50007

# =============================================================================
# PROTOCOL AND VALUES
# =============================================================================


class ExternalServiceUnavailable(Exception):
    """The external service could not answer (timeout, network, 5xx)."""


@dataclass
class DiscordAPIError(ExternalServiceUnavailable):
    """
    Discord answered with a status the client cannot interpret.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code from the response.
        detail: Discord's own error message, if it sent one.
    """

    message: str
    status_code: int = 0
    detail: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


@dataclass(frozen=True)
class ExternalAccount:
    """An account found on the external service."""

    account_id: str
    name: str


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a direct message.  ``reason`` is set when not delivered."""

    delivered: bool
    reason: str | None = None


class VerificationClient(Protocol):
    """Operations the link coordinator needs from the external service.

    Every method may raise :class:`ExternalServiceUnavailable`.
    """

    def find_account_by_name(self, name: str) -> ExternalAccount | None: ...

    def is_member(self, account_id: str) -> bool: ...

    def has_role(self, account_id: str, role_id: str) -> bool: ...

    def send_direct_message(self, account_id: str, text: str) -> DeliveryResult: ...


# =============================================================================
# DISCORD CLIENT
# =============================================================================


class DiscordClient:
    """
    Verification client backed by the Discord REST API.

    Args:
        settings: Discord section of the configuration.
        http_client: Pre-built ``httpx.Client``; one is created from
            ``settings`` when omitted and closed by :meth:`close`.
        monotonic: Clock used for request spacing and cache expiry.
        sleep: Used to wait out the minimum request interval.
    """

    def __init__(
        self,
        settings: DiscordSettings,
        *,
        http_client: httpx.Client | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(
            base_url=settings.api_base_url.rstrip("/") + "/",
            timeout=settings.timeout_seconds,
            headers={"Authorization": f"Bot {settings.bot_token}"},
        )
        self._monotonic = monotonic
        self._sleep = sleep

        self._slots = threading.BoundedSemaphore(max(1, settings.max_concurrent_requests))
        self._spacing_lock = threading.Lock()
        self._last_request_at: float | None = None

        self._cache_ttl = settings.cache_minutes * 60.0
        self._cache: dict[str, tuple[float, ExternalAccount]] = {}
        self._cache_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def __enter__(self) -> DiscordClient:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    # -------------------------------------------------------------------------
    # Verification operations
    # -------------------------------------------------------------------------

    def find_account_by_name(self, name: str) -> ExternalAccount | None:
        """
        Look up a guild member by username.

        Discord's member search is a prefix match, so only a result whose
        username equals ``name`` (case-insensitively) is accepted.
        """
        key = name.strip().lower()
        if not key:
            return None

        cached = self._cache_get(key)
        if cached is not None:
            logger.debug("Discord lookup cache hit for %r", key)
            return cached

        response = self._request(
            "GET",
            f"guilds/{self._settings.server_id}/members/search",
            params={"query": key, "limit": 1},
        )
        self._raise_for_status(response, "member search")
        try:
            members = [GuildMember.model_validate(item) for item in response.json()]
        except (ValidationError, ValueError, TypeError) as exc:
            raise DiscordAPIError("Unexpected member search response", response.status_code) from exc

        for member in members:
            if member.user is not None and member.user.username.lower() == key:
                account = ExternalAccount(account_id=member.user.id, name=member.user.username)
                self._cache_put(key, account)
                return account
        logger.info("Discord user %r not found in guild", name)
        return None

    def is_member(self, account_id: str) -> bool:
        return self._fetch_member(account_id) is not None

    def has_role(self, account_id: str, role_id: str) -> bool:
        member = self._fetch_member(account_id)
        return member is not None and role_id in member.roles

    def send_direct_message(self, account_id: str, text: str) -> DeliveryResult:
        """Open a DM channel with ``account_id`` and post ``text``."""
        response = self._request("POST", "users/@me/channels", json={"recipient_id": account_id})
        refused = self._refusal(response)
        if refused is not None:
            return refused
        try:
            channel = DMChannel.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise DiscordAPIError("Unexpected DM channel response", response.status_code) from exc

        response = self._request("POST", f"channels/{channel.id}/messages", json={"content": text})
        refused = self._refusal(response)
        if refused is not None:
            return refused
        return DeliveryResult(delivered=True)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    def _fetch_member(self, account_id: str) -> GuildMember | None:
        response = self._request("GET", f"guilds/{self._settings.server_id}/members/{account_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "member fetch")
        try:
            return GuildMember.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise DiscordAPIError("Unexpected guild member response", response.status_code) from exc

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        with self._slots:
            self._wait_for_spacing()
            try:
                return self._http.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                logger.warning(
                    "Discord request timed out after %.1fs (%s %s)",
                    self._settings.timeout_seconds,
                    method,
                    path,
                )
                raise ExternalServiceUnavailable("Discord request timed out") from exc
            except httpx.TransportError as exc:
                logger.warning("Cannot reach Discord (%s %s): %s", method, path, exc)
                raise ExternalServiceUnavailable("Cannot reach Discord") from exc

    def _wait_for_spacing(self) -> None:
        interval = self._settings.min_request_interval_ms / 1000.0
        with self._spacing_lock:
            now = self._monotonic()
            if self._last_request_at is not None and interval > 0:
                wait = self._last_request_at + interval - now
                if wait > 0:
                    self._sleep(wait)
                    now = self._monotonic()
            self._last_request_at = now

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        detail = _error_body(response).message
        logger.warning("Discord %s failed with %d: %s", operation, response.status_code, detail)
        raise DiscordAPIError(f"Discord {operation} failed", response.status_code, detail)

    @staticmethod
    def _refusal(response: httpx.Response) -> DeliveryResult | None:
        """Map a 4xx on the DM path to a non-delivery; raise for 429/5xx."""
        if response.is_success:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise DiscordAPIError(
                "Discord direct message failed", response.status_code, _error_body(response).message
            )
        body = _error_body(response)
        if body.code == _CANNOT_MESSAGE_USER or response.status_code == 403:
            return DeliveryResult(False, "direct messages are closed")
        return DeliveryResult(False, f"Discord rejected the message ({response.status_code})")

    # -------------------------------------------------------------------------
    # Lookup cache
    # -------------------------------------------------------------------------

    def _cache_get(self, key: str) -> ExternalAccount | None:
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit is None:
                return None
            stored_at, account = hit
            if self._monotonic() - stored_at >= self._cache_ttl:
                del self._cache[key]
                return None
            return account

    def _cache_put(self, key: str, account: ExternalAccount) -> None:
        now = self._monotonic()
        with self._cache_lock:
            expired = [k for k, (at, _) in self._cache.items() if now - at >= self._cache_ttl]
            for stale in expired:
                del self._cache[stale]
            self._cache[key] = (now, account)


def _error_body(response: httpx.Response) -> DiscordErrorBody:
    try:
        return DiscordErrorBody.model_validate(response.json())
    except (ValidationError, ValueError):
        return DiscordErrorBody(message=response.text[:200])
