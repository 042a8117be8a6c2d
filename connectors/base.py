"""
BaseConnector — the per-connection protocol engine.

One instance wraps one stored ``Connection`` and drives:
  • the OAuth2 authorization-code flow (state + optional PKCE)
  • token refresh through a pluggable ``RefreshStrategy``
  • authenticated outbound requests (proactive refresh, one 401 retry)
  • revocation

State machine::

    unauthenticated → authorizing → authorized ⇄ refreshing → revoked

API-key / basic connectors skip the OAuth states and are ``authorized``
as soon as a key is present.

Every provider (HubSpot, GA4, …) subclasses this, declares its identity
and ``oauth2_config``, and implements ``check_connection`` and
``fetch_service_metadata``.
"""

from __future__ import annotations

import asyncio
import base64
import hmac
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, Mapping, Optional, TypeVar
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.errors import (
    AuthFailedError,
    IntegrationError,
    InvalidStateError,
    OperationTimeoutError,
    RateLimitError,
    TokenExpiredError,
    ValidationError,
)
from connectors.events import EventSink, LoggingEventSink
from connectors.pkce import CHALLENGE_METHOD, generate_state
from connectors.refresh import (
    RefreshGate,
    RefreshStrategy,
    StandardRefreshStrategy,
    parse_retry_after,
    token_set_from_response,
)
from connectors.storage import ConnectionStore
from utils.schemas import (
    AuthMethod,
    Connection,
    ConnectionStatus,
    ConnectorMetadata,
    ConnectorState,
    IntegrationEvent,
    IntegrationEventType,
    OAuth2Config,
    OAuth2State,
    ServiceMetadata,
    TokenSet,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BaseConnector(ABC):
    """Abstract base for all connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    service_name: str = ""
    auth_method: AuthMethod = AuthMethod.OAUTH2
    metadata: ConnectorMetadata = ConnectorMetadata(name="")
    refresh_strategy: RefreshStrategy = StandardRefreshStrategy()

    def __init__(
        self,
        connection: Connection,
        store: ConnectionStore,
        *,
        events: Optional[EventSink] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        refresh_gate: Optional[RefreshGate] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.connection = connection
        self.store = store
        self.events = events or LoggingEventSink()
        self.default_timeout = timeout
        self.oauth_state: Optional[OAuth2State] = None
        self._http_client = http_client
        self._refresh_gate = refresh_gate if refresh_gate is not None else RefreshGate()
        self._refreshing = False

    @property
    def oauth2_config(self) -> Optional[OAuth2Config]:
        """OAuth2 endpoints and client credentials; ``None`` for non-OAuth2 services."""
        return None

    @classmethod
    def is_configured(cls) -> bool:
        """Whether the app-level credentials this connector needs are set."""
        return True

    @property
    def is_oauth2(self) -> bool:
        return self.auth_method == AuthMethod.OAUTH2 and self.oauth2_config is not None

    @property
    def state(self) -> ConnectorState:
        if self.connection.status == ConnectionStatus.REVOKED and not self.has_credentials():
            return ConnectorState.REVOKED
        if self._refreshing:
            return ConnectorState.REFRESHING
        if self.has_credentials():
            return ConnectorState.AUTHORIZED
        if self.oauth_state is not None:
            return ConnectorState.AUTHORIZING
        return ConnectorState.UNAUTHENTICATED

    def has_credentials(self) -> bool:
        if self.auth_method == AuthMethod.OAUTH2:
            return bool(self.connection.oauth_access_token)
        return bool(self.connection.api_key)

    # ── Service-specific hooks ──────────────────────────────────────────

    @abstractmethod
    async def check_connection(self) -> bool:
        """Liveness check against the provider.  Only called with credentials present."""
        ...

    @abstractmethod
    async def fetch_service_metadata(self) -> ServiceMetadata:
        """Account summary from the provider.  Only called with credentials present."""
        ...

    async def revoke_remote(self) -> None:
        """
        Provider-side revocation, run before local credentials are cleared.
        Default: POST the access token to ``oauth2_config.revocation_url``
        when one is configured.  Best effort.
        """
        cfg = self.oauth2_config
        token = self.connection.oauth_access_token
        if cfg is None or not cfg.revocation_url or not token:
            return
        try:
            async with self._client() as client:
                resp = await client.post(
                    cfg.revocation_url,
                    data={"token": token, "client_id": cfg.client_id},
                )
            if resp.is_error:
                logger.warning(
                    "%s revocation endpoint answered %s", self.service_name, resp.status_code
                )
        except httpx.HTTPError:
            logger.warning("%s token revocation failed", self.service_name, exc_info=True)

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def build_authorization_url(self, return_url: Optional[str] = None) -> Optional[str]:
        """
        Issue a fresh state (and PKCE pair when required) and return the
        provider's authorization URL.  ``None`` for non-OAuth2 connectors.
        """
        cfg = self.oauth2_config
        if not self.is_oauth2 or cfg is None:
            return None

        state = generate_state(with_pkce=cfg.use_pkce)
        state.return_url = return_url
        params: Dict[str, str] = {
            **cfg.additional_params,
            "client_id": cfg.client_id,
            "redirect_uri": cfg.redirect_uri,
            "response_type": "code",
            "scope": " ".join(cfg.scopes),
            "state": state.state,
        }
        if state.code_challenge:
            params["code_challenge"] = state.code_challenge
            params["code_challenge_method"] = CHALLENGE_METHOD

        self.oauth_state = state
        await self._emit(IntegrationEventType.AUTH_STARTED, data={"service": self.service_name})
        separator = "&" if "?" in cfg.authorization_url else "?"
        return f"{cfg.authorization_url}{separator}{urlencode(params)}"

    def restore_state(self, state: OAuth2State) -> None:
        """Re-attach a state issued by an earlier request (the callback arrives on a new connector)."""
        self.oauth_state = state

    async def handle_callback(
        self,
        params: Mapping[str, Any],
        *,
        timeout: Optional[float] = None,
    ) -> Connection:
        """
        Validate the returned ``state``, then exchange ``code`` for tokens
        and persist them.  A state mismatch never reaches the token endpoint.
        """
        cfg = self.oauth2_config
        if not self.is_oauth2 or cfg is None:
            raise IntegrationError("Not an OAuth2 connector", "INVALID_AUTH_METHOD", 400)

        issued = self.oauth_state
        received = params.get("state")
        if issued is None or not received or not hmac.compare_digest(
            str(received).encode(), issued.state.encode()
        ):
            raise InvalidStateError()
        # single use: any replay of this state is rejected from here on
        self.oauth_state = None

        if params.get("error"):
            error = AuthFailedError(
                str(params.get("error_description") or params["error"]),
                code="OAUTH_ERROR",
                status_code=400,
            )
            await self._emit(IntegrationEventType.AUTH_FAILED, error=error.message)
            raise error

        code = params.get("code")
        if not code:
            raise ValidationError("No authorization code received")

        try:
            tokens = await self._bounded(
                "Token exchange",
                self.exchange_code_for_token(str(code), issued.code_verifier),
                timeout,
            )
            await self._save_tokens(tokens, ConnectionStatus.AUTHORIZED)
        except IntegrationError as exc:
            await self._emit(IntegrationEventType.AUTH_FAILED, error=exc.message)
            raise

        await self._emit(IntegrationEventType.AUTH_COMPLETED, data={"service": self.service_name})
        return self.connection

    async def exchange_code_for_token(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        cfg = self._require_oauth2()
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": cfg.redirect_uri,
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            async with self._client() as client:
                resp = await client.post(
                    cfg.token_url, data=data, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as exc:
            raise upstream_error("Token exchange", exc) from exc
        return token_set_from_response(
            resp,
            "Token exchange",
            rejected=lambda message: AuthFailedError(message, code="TOKEN_EXCHANGE_FAILED"),
        )

    # ── Refresh ─────────────────────────────────────────────────────────

    async def refresh_token(self, *, timeout: Optional[float] = None) -> None:
        """
        Exchange the stored refresh token for a new access token.

        Without a refresh token the caller must re-authorize from scratch,
        so the ``TokenExpiredError`` raised is not retryable.  A failed
        refresh leaves the stale tokens in place.
        """
        if not self.is_oauth2:
            return
        if not self.connection.oauth_refresh_token:
            raise TokenExpiredError("No refresh token available", retryable=False)
        await self._bounded("Token refresh", self._refresh_single_flight(), timeout)

    async def _refresh_single_flight(self) -> None:
        cfg = self._require_oauth2()
        connection_id = await self._ensure_persisted()
        seen_token = self.connection.oauth_access_token

        async with self._refresh_gate.lock_for(connection_id):
            current = await self.store.get_connection(connection_id) or self.connection
            if (
                current.oauth_access_token
                and current.oauth_access_token != seen_token
                and not current.is_token_expired()
            ):
                # another caller refreshed while we waited for the gate
                logger.debug("Adopting token refreshed concurrently for %s", connection_id)
                self.connection = current
                return

            refresh_token = current.oauth_refresh_token
            if not refresh_token:
                raise TokenExpiredError("No refresh token available", retryable=False)

            self._refreshing = True
            try:
                async with self._client() as client:
                    tokens = await self.refresh_strategy.refresh(client, cfg, refresh_token)
                if not tokens.refresh_token:
                    tokens.refresh_token = refresh_token
                await self._save_tokens(tokens, ConnectionStatus.REFRESHED)
            except httpx.HTTPError as exc:
                await self._refresh_failed(str(exc))
                raise upstream_error("Token refresh", exc) from exc
            except IntegrationError as exc:
                await self._refresh_failed(exc.message)
                raise
            finally:
                self._refreshing = False

        logger.info("Refreshed %s token for connection %s", self.service_name, connection_id)
        await self._emit(IntegrationEventType.AUTH_REFRESHED)

    async def _refresh_failed(self, reason: str) -> None:
        self.connection = await self.store.update_connection(
            self.connection.id, {"status": ConnectionStatus.ERROR}
        )
        logger.warning(
            "Token refresh failed for %s/%s: %s", self.service_name, self.connection.id, reason
        )
        await self._emit(IntegrationEventType.AUTH_FAILED, error=reason)

    # ── Authenticated requests ──────────────────────────────────────────

    def auth_headers(self) -> Dict[str, str]:
        conn = self.connection
        if self.auth_method == AuthMethod.OAUTH2 and conn.oauth_access_token:
            return {"Authorization": f"Bearer {conn.oauth_access_token}"}
        if self.auth_method == AuthMethod.APIKEY and conn.api_key:
            return {"Authorization": f"Bearer {conn.api_key}"}
        if self.auth_method == AuthMethod.BASIC and conn.api_key:
            raw = f"{conn.api_key}:{conn.api_secret or ''}".encode()
            return {"Authorization": f"Basic {base64.b64encode(raw).decode()}"}
        return {}

    async def make_authenticated_request(
        self,
        method: str,
        url: str,
        *,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send ``method url`` with the connection's credential injected.

        • expired OAuth2 token → refresh before sending
        • 401 (OAuth2) → exactly one refresh and one retry; a second 401
          raises a non-retryable ``TokenExpiredError``
        • 429 → ``RateLimitError`` carrying ``Retry-After`` seconds; no retry
        """
        return await self._bounded(
            f"{method} {url}", self._authenticated_request(method, url, kwargs), timeout
        )

    async def _authenticated_request(
        self, method: str, url: str, options: Dict[str, Any]
    ) -> httpx.Response:
        if self.is_oauth2 and self.connection.is_token_expired():
            await self.refresh_token()

        resp = await self._send(method, url, options)

        if resp.status_code == 401:
            if not self.is_oauth2:
                raise AuthFailedError(f"{self.service_name} rejected the configured credentials")
            await self.refresh_token()
            resp = await self._send(method, url, options)
            if resp.status_code == 401:
                raise TokenExpiredError("Access token rejected after refresh", retryable=False)

        if resp.status_code == 429:
            raise RateLimitError(retry_after=parse_retry_after(resp.headers.get("Retry-After")))

        return resp

    async def _send(self, method: str, url: str, options: Dict[str, Any]) -> httpx.Response:
        kwargs = dict(options)
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self.auth_headers())
        try:
            async with self._client() as client:
                return await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise upstream_error(f"{method} {url}", exc) from exc

    # ── Revocation ──────────────────────────────────────────────────────

    async def revoke_access(self, *, timeout: Optional[float] = None) -> Connection:
        """Clear stored credentials, keeping the record for audit."""
        await self._bounded("Revoke access", self._revoke(), timeout)
        await self._emit(IntegrationEventType.AUTH_REVOKED)
        return self.connection

    async def _revoke(self) -> None:
        await self.revoke_remote()
        connection_id = await self._ensure_persisted()
        self.connection = await self.store.update_connection(
            connection_id,
            {
                "oauth_access_token": None,
                "oauth_refresh_token": None,
                "oauth_expires_at": None,
                "api_key": None,
                "api_secret": None,
                "status": ConnectionStatus.REVOKED,
            },
        )
        self.oauth_state = None
        self._refresh_gate.discard(connection_id)

    # ── Liveness / account info ─────────────────────────────────────────

    async def test_connection(self) -> bool:
        if not self.has_credentials():
            return False
        try:
            return await self.check_connection()
        except IntegrationError as exc:
            logger.info("%s connection test failed: %s", self.service_name, exc.message)
            return False

    async def get_service_metadata(self) -> ServiceMetadata:
        if not self.has_credentials():
            return ServiceMetadata(service_name=self.service_name)
        meta = await self.fetch_service_metadata()
        connection_id = await self._ensure_persisted()
        self.connection = await self.store.update_metadata(
            connection_id, meta.model_dump(mode="json")
        )
        return meta

    # ── Helpers ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=config.http_timeout_seconds) as client:
            yield client

    async def _bounded(self, operation: str, coro: Awaitable[T], timeout: Optional[float]) -> T:
        limit = timeout if timeout is not None else self.default_timeout
        if limit is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, limit)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(operation, limit) from exc

    async def _ensure_persisted(self) -> str:
        if not self.connection.id:
            self.connection = await self.store.save_connection(self.connection)
        return self.connection.id

    async def _save_tokens(self, tokens: TokenSet, status: ConnectionStatus) -> None:
        connection_id = await self._ensure_persisted()
        self.connection = await self.store.update_tokens(
            connection_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            status=status,
        )

    def _require_oauth2(self) -> OAuth2Config:
        cfg = self.oauth2_config
        if cfg is None:
            raise IntegrationError("OAuth2 config not defined", "NO_CONFIG", 500)
        return cfg

    async def _emit(
        self,
        event_type: IntegrationEventType,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self.events.publish(
            IntegrationEvent(
                event_type=event_type,
                connection_id=self.connection.id,
                data=data or {},
                error=error,
            )
        )


def upstream_error(operation: str, exc: Exception) -> IntegrationError:
    return IntegrationError(
        f"{operation} could not reach the provider: {exc}",
        "UPSTREAM_UNAVAILABLE",
        502,
        retryable=True,
    )


def provider_json(resp: httpx.Response, operation: str) -> Any:
    """Decode a provider API response, mapping non-2xx to ``IntegrationError``."""
    if resp.is_error:
        raise IntegrationError(
            f"{operation} failed: {resp.status_code} {resp.reason_phrase}",
            "PROVIDER_ERROR",
            502,
            retryable=resp.status_code >= 500,
            details={"status": resp.status_code},
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise IntegrationError(f"{operation} returned a non-JSON body", "PROVIDER_ERROR", 502) from exc
