"""
HubSpotConnector — OAuth2 for the HubSpot CRM API.

HubSpot does not use PKCE.  Refresh tokens are long-lived and are revoked
through a dedicated endpoint keyed by the refresh token itself.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from config.settings import config
from connectors.base import BaseConnector, provider_json, upstream_error
from connectors.errors import ValidationError
from utils.schemas import (
    AuthMethod,
    Connection,
    ConnectorMetadata,
    OAuth2Config,
    ServiceMetadata,
    WebhookPayload,
)

logger = logging.getLogger(__name__)

# HubSpot endpoints
_HS_AUTH_URL = "https://app.hubspot.com/oauth/authorize"
_HS_TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"
_HS_API = "https://api.hubapi.com"

HUBSPOT_SCOPES = [
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.objects.companies.read",
    "crm.objects.companies.write",
    "crm.objects.deals.read",
    "crm.objects.deals.write",
    "crm.schemas.contacts.read",
    "crm.schemas.companies.read",
    "crm.schemas.deals.read",
    "oauth",
]


class HubSpotSettings(BaseModel):
    """Per-connection options stored in ``connection.config``."""

    portal_id: Optional[str] = Field(None, alias="portalId")
    api_version: str = Field("v3", alias="apiVersion")
    sync_contacts: bool = Field(True, alias="syncContacts")
    sync_companies: bool = Field(True, alias="syncCompanies")
    sync_deals: bool = Field(True, alias="syncDeals")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class HubSpotConnector(BaseConnector):
    """OAuth2 connector for HubSpot."""

    service_name = "HubSpot"
    auth_method = AuthMethod.OAUTH2
    metadata = ConnectorMetadata(
        name="HubSpot",
        description="Connect to HubSpot CRM for contact, company, and deal management",
        icon="hubspot",
        auth_method=AuthMethod.OAUTH2,
        config_schema=HubSpotSettings.model_json_schema(by_alias=True),
        documentation_url="https://developers.hubspot.com/docs/api/oauth",
        capabilities=["contacts", "companies", "deals", "webhooks", "custom-objects"],
    )

    @classmethod
    def is_configured(cls) -> bool:
        return bool(config.hubspot_client_id and config.hubspot_client_secret)

    @property
    def oauth2_config(self) -> OAuth2Config:
        return OAuth2Config(
            client_id=config.hubspot_client_id,
            client_secret=config.hubspot_client_secret,
            authorization_url=_HS_AUTH_URL,
            token_url=_HS_TOKEN_URL,
            redirect_uri=config.hubspot_redirect_uri or config.redirect_uri_for("hubspot"),
            scopes=HUBSPOT_SCOPES,
        )

    @property
    def settings(self) -> HubSpotSettings:
        return HubSpotSettings.model_validate(self.connection.config or {})

    async def check_connection(self) -> bool:
        resp = await self.make_authenticated_request("GET", f"{_HS_API}/account-info/v3/details")
        return resp.is_success

    async def _token_info(self) -> Dict[str, Any]:
        """
        Introspect the current access token.  The token is part of the URL,
        so this must run after any refresh and is never retried.
        """
        url = f"{_HS_API}/oauth/v1/access-tokens/{self.connection.oauth_access_token}"
        try:
            async with self._client() as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise upstream_error("HubSpot token lookup", exc) from exc
        return provider_json(resp, "HubSpot token lookup")

    async def fetch_service_metadata(self) -> ServiceMetadata:
        account = provider_json(
            await self.make_authenticated_request("GET", f"{_HS_API}/account-info/v3/details"),
            "HubSpot account lookup",
        )
        token_info = await self._token_info()
        portal_id = account.get("portalId")
        return ServiceMetadata(
            service_name=self.service_name,
            service_version=self.settings.api_version,
            account_id=str(portal_id) if portal_id is not None else None,
            account_name=account.get("companyName"),
            permissions=token_info.get("scopes") or [],
            limits={"rateLimit": 100},
            last_sync=self.connection.updated_at,
            sync_status="active",
        )

    async def revoke_remote(self) -> None:
        refresh_token = self.connection.oauth_refresh_token
        if not refresh_token:
            return
        try:
            async with self._client() as client:
                resp = await client.delete(f"{_HS_API}/oauth/v1/refresh-tokens/{refresh_token}")
            if resp.is_error and resp.status_code != 404:
                logger.warning("HubSpot refresh-token revocation answered %s", resp.status_code)
        except httpx.HTTPError:
            logger.warning("HubSpot token revocation failed", exc_info=True)

    # ── CRM helpers ─────────────────────────────────────────────────────

    async def _list_objects(self, object_type: str, limit: int, after: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        resp = await self.make_authenticated_request(
            "GET", f"{_HS_API}/crm/v3/objects/{object_type}", params=params
        )
        return provider_json(resp, f"HubSpot {object_type} listing")

    async def get_contacts(self, limit: int = 100, after: Optional[str] = None) -> Dict[str, Any]:
        return await self._list_objects("contacts", limit, after)

    async def get_companies(self, limit: int = 100, after: Optional[str] = None) -> Dict[str, Any]:
        return await self._list_objects("companies", limit, after)

    async def get_deals(self, limit: int = 100, after: Optional[str] = None) -> Dict[str, Any]:
        return await self._list_objects("deals", limit, after)

    async def create_contact(self, properties: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.make_authenticated_request(
            "POST", f"{_HS_API}/crm/v3/objects/contacts", json={"properties": properties}
        )
        return provider_json(resp, "HubSpot contact creation")

    async def create_webhook_subscription(self, events: List[str], url: str) -> Dict[str, Any]:
        """Subscribe the app's webhook target to ``events`` on the portal."""
        portal_id = self.settings.portal_id
        if not portal_id:
            raise ValidationError("Portal ID not configured")
        resp = await self.make_authenticated_request(
            "POST",
            f"{_HS_API}/webhooks/v3/{portal_id}/subscriptions",
            json={"eventTypes": events, "targetUrl": url, "active": True},
        )
        return provider_json(resp, "HubSpot webhook subscription")

    # ── Inbound webhooks ────────────────────────────────────────────────

    @staticmethod
    async def handle_webhook(payload: WebhookPayload, connection: Connection) -> None:
        """HubSpot batches events into a JSON array of subscription notifications."""
        items = payload.data if isinstance(payload.data, list) else [payload.data]
        for item in items:
            if not isinstance(item, dict):
                continue
            logger.info(
                "HubSpot %s for object %s (portal=%s, connection=%s)",
                item.get("subscriptionType", payload.event),
                item.get("objectId"),
                item.get("portalId"),
                connection.id,
            )
