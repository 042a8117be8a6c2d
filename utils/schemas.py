"""
Pydantic schemas for the integration framework.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


REDACTED = "[REDACTED]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════


class AuthMethod(str, Enum):
    OAUTH2 = "oauth2"
    APIKEY = "apikey"
    BASIC = "basic"
    CUSTOM = "custom"


class ConnectionStatus(str, Enum):
    PENDING = "pending"          # created, no credentials yet
    AUTHORIZED = "authorized"    # code exchange / key validation succeeded
    REFRESHED = "refreshed"      # at least one successful token refresh
    REVOKED = "revoked"          # credentials cleared, record retained
    ERROR = "error"              # last refresh failed, stale tokens kept


class ConnectorState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class IntegrationEventType(str, Enum):
    AUTH_STARTED = "auth:started"
    AUTH_COMPLETED = "auth:completed"
    AUTH_FAILED = "auth:failed"
    AUTH_REFRESHED = "auth:refreshed"
    AUTH_REVOKED = "auth:revoked"
    WEBHOOK_REGISTERED = "webhook:registered"
    WEBHOOK_UNREGISTERED = "webhook:unregistered"
    WEBHOOK_PAUSED = "webhook:paused"
    WEBHOOK_RESUMED = "webhook:resumed"
    WEBHOOK_RECEIVED = "webhook:received"
    WEBHOOK_PROCESSED = "webhook:processed"
    WEBHOOK_IGNORED = "webhook:ignored"
    WEBHOOK_ERROR = "webhook:error"


# ═══════════════════════════════════════════════════════════════════════════════
# Connection
# ═══════════════════════════════════════════════════════════════════════════════


class ServiceMetadata(BaseModel):
    """Last-known summary of the account on the external service."""

    service_name: str = ""
    service_version: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    limits: Dict[str, int] = Field(default_factory=dict)
    last_sync: Optional[datetime] = None
    sync_status: Optional[str] = None  # "active" | "paused" | "error"

    def is_empty(self) -> bool:
        return not (self.account_id or self.account_name or self.permissions)


class Connection(BaseModel):
    """One tenant's link to one external service."""

    id: Optional[str] = None
    property_id: str
    integration_type: str
    name: Optional[str] = None

    oauth_access_token: Optional[str] = None
    oauth_refresh_token: Optional[str] = None
    oauth_expires_at: Optional[datetime] = None

    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    config: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: ConnectionStatus = ConnectionStatus.PENDING

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.oauth_expires_at is None:
            return False
        expires_at = self.oauth_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or utcnow())

    def redacted(self) -> Dict[str, Any]:
        """Serialisable view with every secret masked."""
        data = self.model_dump(mode="json")
        for key in ("oauth_access_token", "oauth_refresh_token", "api_key", "api_secret"):
            if data.get(key):
                data[key] = REDACTED
        webhooks = data.get("config", {}).get("webhooks")
        if isinstance(webhooks, list):
            data["config"]["webhooks"] = [
                {**w, "secret": REDACTED} if w.get("secret") else w for w in webhooks
            ]
        return data


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth2
# ═══════════════════════════════════════════════════════════════════════════════


class OAuth2Config(BaseModel):
    client_id: str
    client_secret: str
    authorization_url: str
    token_url: str
    redirect_uri: str
    scopes: List[str] = Field(default_factory=list)
    use_pkce: bool = False
    additional_params: Dict[str, str] = Field(default_factory=dict)
    revocation_url: Optional[str] = None


class OAuth2State(BaseModel):
    """Ephemeral, single-use binding between an authorization attempt and its callback."""

    state: str
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None
    nonce: Optional[str] = None
    return_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        """Build from a standard RFC 6749 token endpoint JSON body."""
        expires_in = data.get("expires_in")
        expires_at = None
        if expires_in is not None:
            expires_in = int(expires_in)
            expires_at = utcnow() + timedelta(seconds=expires_in)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=expires_in,
            expires_at=expires_at,
            token_type=data.get("token_type"),
            scope=data.get("scope"),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Registry metadata
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectorMetadata(BaseModel):
    name: str
    description: str = ""
    icon: Optional[str] = None
    auth_method: AuthMethod = AuthMethod.OAUTH2
    config_schema: Dict[str, Any] = Field(default_factory=dict)
    documentation_url: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Webhooks
# ═══════════════════════════════════════════════════════════════════════════════


class WebhookConfig(BaseModel):
    url: str
    events: List[str] = Field(default_factory=list)
    secret: Optional[str] = None
    active: bool = True

    def accepts(self, event: str) -> bool:
        """Empty subscription list or ``*`` means every event."""
        return not self.events or "*" in self.events or event in self.events


class WebhookRecord(BaseModel):
    webhook_id: str
    connection_id: str
    config: WebhookConfig
    created_at: datetime = Field(default_factory=utcnow)


class WebhookPayload(BaseModel):
    webhook_id: str
    connection_id: str
    event: str
    raw_body: bytes
    data: Any = None
    received_at: datetime = Field(default_factory=utcnow)
    signature: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Lifecycle events
# ═══════════════════════════════════════════════════════════════════════════════


class IntegrationEvent(BaseModel):
    event_type: IntegrationEventType
    connection_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP request bodies
# ═══════════════════════════════════════════════════════════════════════════════


class CreateConnectionRequest(BaseModel):
    property_id: str = Field(..., alias="propertyId")
    integration_type: str = Field(..., alias="integrationType")
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    api_key: Optional[str] = Field(None, alias="apiKey")
    api_secret: Optional[str] = Field(None, alias="apiSecret")

    model_config = {"populate_by_name": True}


class UpdateConnectionRequest(BaseModel):
    name: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class RegisterWebhookRequest(BaseModel):
    url: Optional[str] = None  # defaults to the service's public webhook endpoint
    events: List[str] = Field(default_factory=list)
    secret: Optional[str] = None
