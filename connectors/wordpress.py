"""
WordPressConnector — HTTP Basic auth with an Application Password.

The username is stored as ``api_key`` and the application password as
``api_secret``; the site base URL lives in ``connection.config``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from connectors.base import BaseConnector, provider_json
from connectors.errors import ValidationError
from utils.schemas import AuthMethod, ConnectorMetadata, ServiceMetadata

logger = logging.getLogger(__name__)


class WordPressSettings(BaseModel):
    base_url: str = Field(..., alias="baseUrl")
    api_version: str = Field("v2", alias="apiVersion")
    sync_posts: bool = Field(True, alias="syncPosts")
    sync_pages: bool = Field(True, alias="syncPages")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class WordPressConnector(BaseConnector):
    """Basic-auth connector for self-hosted WordPress sites."""

    service_name = "WordPress"
    auth_method = AuthMethod.BASIC
    metadata = ConnectorMetadata(
        name="WordPress",
        description="Connect to WordPress sites using Application Passwords",
        icon="wordpress",
        auth_method=AuthMethod.BASIC,
        config_schema=WordPressSettings.model_json_schema(by_alias=True),
        documentation_url="https://developer.wordpress.org/rest-api/",
        capabilities=["posts", "pages", "media", "users", "comments", "webhooks"],
    )

    @property
    def settings(self) -> WordPressSettings:
        try:
            return WordPressSettings.model_validate(self.connection.config or {})
        except SchemaError as exc:
            raise ValidationError("WordPress configuration is invalid", details=exc.errors()) from exc

    def _url(self, endpoint: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}{endpoint}"

    async def check_connection(self) -> bool:
        resp = await self.make_authenticated_request("GET", self._url("/wp-json/wp/v2/users/me"))
        return resp.is_success

    async def fetch_service_metadata(self) -> ServiceMetadata:
        user = provider_json(
            await self.make_authenticated_request(
                "GET", self._url("/wp-json/wp/v2/users/me"), params={"context": "edit"}
            ),
            "WordPress user lookup",
        )
        capabilities = user.get("capabilities") or {}
        return ServiceMetadata(
            service_name=self.service_name,
            service_version=self.settings.api_version,
            account_id=str(user["id"]) if user.get("id") is not None else None,
            account_name=user.get("name") or user.get("slug"),
            permissions=sorted(capabilities),
            limits={"rateLimit": 60},
            last_sync=self.connection.updated_at,
            sync_status="active",
        )

    async def get_posts(
        self,
        per_page: int = 10,
        page: int = 1,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"per_page": per_page, "page": page}
        if status:
            params["status"] = status
        resp = await self.make_authenticated_request(
            "GET", self._url("/wp-json/wp/v2/posts"), params=params
        )
        return {
            "data": provider_json(resp, "WordPress posts listing"),
            "total": int(resp.headers.get("X-WP-Total", "0")),
            "totalPages": int(resp.headers.get("X-WP-TotalPages", "0")),
        }
