"""
Token refresh strategies and the per-connection single-flight gate.

Providers that deviate from the plain RFC 6749 refresh grant plug in a
different ``RefreshStrategy``; the connector state machine in
``connectors.base`` stays the same for everyone.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Optional

import httpx

from connectors.errors import IntegrationError, RateLimitError, TokenExpiredError
from utils.schemas import OAuth2Config, TokenSet

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """``Retry-After`` as whole seconds (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


def token_set_from_response(
    response: httpx.Response,
    operation: str,
    rejected: Optional[Callable[[str], IntegrationError]] = None,
) -> TokenSet:
    """
    Parse a token endpoint response.

    400/401 or an ``error`` member mean the grant itself was rejected;
    ``rejected`` builds the error raised for that case (default: a
    non-retryable TokenExpiredError).
    """
    if rejected is None:
        rejected = lambda message: TokenExpiredError(message, retryable=False)  # noqa: E731
    if response.status_code == 429:
        raise RateLimitError(
            f"{operation} rate limited",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if response.status_code in (400, 401):
        raise rejected(f"{operation} rejected: {response.text}")
    if response.is_error:
        raise IntegrationError(
            f"{operation} failed: {response.status_code} {response.text}",
            "TOKEN_ENDPOINT_ERROR",
            502,
            retryable=True,
        )
    try:
        data = response.json()
    except ValueError as exc:
        raise IntegrationError(
            f"{operation} returned a non-JSON body", "TOKEN_ENDPOINT_ERROR", 502
        ) from exc
    if "error" in data:
        raise rejected(f"{operation} rejected: {data.get('error_description', data['error'])}")
    if not data.get("access_token"):
        raise IntegrationError(
            f"{operation} response has no access_token", "TOKEN_ENDPOINT_ERROR", 502
        )
    return TokenSet.from_response(data)


class RefreshStrategy(ABC):
    @abstractmethod
    async def refresh(
        self,
        client: httpx.AsyncClient,
        oauth2_config: OAuth2Config,
        refresh_token: str,
    ) -> TokenSet:
        """Exchange ``refresh_token`` for a new TokenSet."""
        ...


class StandardRefreshStrategy(RefreshStrategy):
    """Form-posts client credentials in the body (``client_secret_post``)."""

    def __init__(self, include_redirect_uri: bool = False) -> None:
        self.include_redirect_uri = include_redirect_uri

    async def refresh(
        self,
        client: httpx.AsyncClient,
        oauth2_config: OAuth2Config,
        refresh_token: str,
    ) -> TokenSet:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": oauth2_config.client_id,
            "client_secret": oauth2_config.client_secret,
        }
        if self.include_redirect_uri:
            data["redirect_uri"] = oauth2_config.redirect_uri
        resp = await client.post(
            oauth2_config.token_url,
            data=data,
            headers={"Accept": "application/json"},
        )
        return token_set_from_response(resp, "Token refresh")


class BasicAuthRefreshStrategy(RefreshStrategy):
    """Sends client credentials as HTTP Basic (``client_secret_basic``)."""

    async def refresh(
        self,
        client: httpx.AsyncClient,
        oauth2_config: OAuth2Config,
        refresh_token: str,
    ) -> TokenSet:
        resp = await client.post(
            oauth2_config.token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(oauth2_config.client_id, oauth2_config.client_secret),
            headers={"Accept": "application/json"},
        )
        return token_set_from_response(resp, "Token refresh")


class RefreshGate:
    """
    One ``asyncio.Lock`` per connection id so concurrent refreshes of the
    same connection run one at a time inside this process.  Separate
    processes sharing a database are not coordinated.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    def discard(self, connection_id: str) -> None:
        lock = self._locks.get(connection_id)
        if lock is not None and not lock.locked():
            del self._locks[connection_id]

    def __len__(self) -> int:
        return len(self._locks)
