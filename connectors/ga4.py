"""
GA4Connector — OAuth2 web flow for the Google Analytics 4 APIs.

Google supports PKCE, so every authorization request carries an S256
challenge.  ``access_type=offline`` + ``prompt=consent`` make Google return
a refresh token on every consent.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from config.settings import config
from connectors.base import BaseConnector, provider_json
from connectors.refresh import StandardRefreshStrategy
from utils.schemas import AuthMethod, ConnectorMetadata, OAuth2Config, ServiceMetadata

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_GA_ADMIN_API = "https://analyticsadmin.googleapis.com/v1beta"
_GA_DATA_API = "https://analyticsdata.googleapis.com/v1beta"

GA4_SCOPES = [
    "https://www.googleapis.com/auth/analytics.readonly",
    "https://www.googleapis.com/auth/analytics.edit",
    "https://www.googleapis.com/auth/analytics.manage.users",
]


class GA4DateRange(BaseModel):
    start_date: str = Field("30daysAgo", alias="startDate")
    end_date: str = Field("yesterday", alias="endDate")

    model_config = {"populate_by_name": True}


class GA4Settings(BaseModel):
    """Per-connection options stored in ``connection.config``."""

    property_ids: List[str] = Field(default_factory=list, alias="propertyIds")
    dimensions: List[str] = Field(default_factory=lambda: ["date", "country", "deviceCategory"])
    metrics: List[str] = Field(
        default_factory=lambda: [
            "activeUsers",
            "sessions",
            "screenPageViews",
            "engagementRate",
            "bounceRate",
        ]
    )
    date_range: GA4DateRange = Field(default_factory=GA4DateRange, alias="dateRange")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class GA4Connector(BaseConnector):
    """OAuth2 + PKCE connector for Google Analytics 4."""

    service_name = "Google Analytics 4"
    auth_method = AuthMethod.OAUTH2
    refresh_strategy = StandardRefreshStrategy(include_redirect_uri=True)
    metadata = ConnectorMetadata(
        name="Google Analytics 4",
        description="Connect to Google Analytics 4 for website and app analytics",
        icon="google-analytics",
        auth_method=AuthMethod.OAUTH2,
        config_schema=GA4Settings.model_json_schema(by_alias=True),
        documentation_url="https://developers.google.com/analytics/devguides/reporting/data/v1",
        capabilities=["analytics", "realtime", "user-properties", "custom-dimensions", "audiences"],
    )

    @classmethod
    def is_configured(cls) -> bool:
        return bool(config.google_client_id and config.google_client_secret)

    @property
    def oauth2_config(self) -> OAuth2Config:
        return OAuth2Config(
            client_id=config.google_client_id,
            client_secret=config.google_client_secret,
            authorization_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            redirect_uri=config.google_redirect_uri or config.redirect_uri_for("ga4"),
            scopes=GA4_SCOPES,
            use_pkce=True,
            additional_params={
                "access_type": "offline",
                "prompt": "consent",
                "include_granted_scopes": "true",
            },
            revocation_url=_GOOGLE_REVOKE_URL,
        )

    @property
    def settings(self) -> GA4Settings:
        return GA4Settings.model_validate(self.connection.config or {})

    async def check_connection(self) -> bool:
        resp = await self.make_authenticated_request("GET", f"{_GA_ADMIN_API}/accounts")
        return resp.is_success

    async def fetch_service_metadata(self) -> ServiceMetadata:
        user = provider_json(
            await self.make_authenticated_request("GET", _GOOGLE_USERINFO_URL),
            "Google user info",
        )
        return ServiceMetadata(
            service_name=self.service_name,
            service_version="v1beta",
            account_id=user.get("id"),
            account_name=user.get("email"),
            permissions=list(GA4_SCOPES),
            limits={"rateLimit": 10000, "quotaUsed": 0, "quotaTotal": 10000},
            last_sync=self.connection.updated_at,
            sync_status="active",
        )

    # ── Analytics helpers ───────────────────────────────────────────────

    async def list_account_summaries(self) -> Dict[str, Any]:
        resp = await self.make_authenticated_request("GET", f"{_GA_ADMIN_API}/accountSummaries")
        return provider_json(resp, "GA4 account summaries")

    async def get_property(self, property_id: str) -> Dict[str, Any]:
        resp = await self.make_authenticated_request(
            "GET", f"{_GA_ADMIN_API}/properties/{property_id}"
        )
        return provider_json(resp, "GA4 property lookup")

    async def run_report(self, property_id: str) -> Dict[str, Any]:
        """Run the connection's configured dimensions/metrics over its date range."""
        opts = self.settings
        body = {
            "dateRanges": [
                {"startDate": opts.date_range.start_date, "endDate": opts.date_range.end_date}
            ],
            "dimensions": [{"name": d} for d in opts.dimensions],
            "metrics": [{"name": m} for m in opts.metrics],
        }
        resp = await self.make_authenticated_request(
            "POST", f"{_GA_DATA_API}/properties/{property_id}:runReport", json=body
        )
        return provider_json(resp, "GA4 report")
