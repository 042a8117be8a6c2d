"""
Shared fixtures: a minimal OAuth2 connector, a fake provider behind
``httpx.MockTransport`` and an event sink that records what it receives.
"""

import asyncio
import os
from typing import List, Optional
from urllib.parse import parse_qsl

os.environ.setdefault("USE_MEMORY_STORE", "true")

import httpx
import pytest

from connectors.base import BaseConnector, provider_json
from connectors.events import EventSink
from connectors.registry import IntegrationRegistry
from connectors.storage import MemoryConnectionStore
from utils.schemas import (
    AuthMethod,
    Connection,
    ConnectorMetadata,
    IntegrationEvent,
    IntegrationEventType,
    OAuth2Config,
    ServiceMetadata,
)

AUTH_URL = "https://auth.example.test/authorize"
TOKEN_URL = "https://auth.example.test/token"
REVOKE_URL = "https://auth.example.test/revoke"
API_URL = "https://api.example.test"


class RecordingSink(EventSink):
    def __init__(self) -> None:
        self.events: List[IntegrationEvent] = []

    async def publish(self, event: IntegrationEvent) -> None:
        self.events.append(event)

    def types(self) -> List[IntegrationEventType]:
        return [e.event_type for e in self.events]

    def of(self, event_type: IntegrationEventType) -> List[IntegrationEvent]:
        return [e for e in self.events if e.event_type == event_type]


class MockConnector(BaseConnector):
    service_name = "Mock"
    use_pkce = False
    metadata = ConnectorMetadata(
        name="Mock",
        description="Test double",
        capabilities=["contacts"],
    )

    @property
    def oauth2_config(self) -> OAuth2Config:
        return OAuth2Config(
            client_id="client-id",
            client_secret="client-secret",
            authorization_url=AUTH_URL,
            token_url=TOKEN_URL,
            redirect_uri="http://localhost:8000/api/v1/integrations/callback/mock",
            scopes=["read", "write"],
            use_pkce=self.use_pkce,
            revocation_url=REVOKE_URL,
        )

    async def check_connection(self) -> bool:
        resp = await self.make_authenticated_request("GET", f"{API_URL}/me")
        return resp.is_success

    async def fetch_service_metadata(self) -> ServiceMetadata:
        data = provider_json(
            await self.make_authenticated_request("GET", f"{API_URL}/me"), "Mock account"
        )
        return ServiceMetadata(
            service_name=self.service_name,
            account_id=data.get("id"),
            account_name=data.get("name"),
        )


class PkceMockConnector(MockConnector):
    use_pkce = True


class KeyMockConnector(MockConnector):
    auth_method = AuthMethod.APIKEY
    metadata = ConnectorMetadata(name="Mock key", auth_method=AuthMethod.APIKEY)

    @property
    def oauth2_config(self) -> Optional[OAuth2Config]:
        return None


class BasicMockConnector(KeyMockConnector):
    auth_method = AuthMethod.BASIC


class FakeProvider:
    """
    Token endpoint issues ``access-N`` / ``refresh-N`` on the N-th call.
    API calls pop ``api_responses`` in order, then answer 200.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.api_responses: List[httpx.Response] = []
        self.token_response: Optional[httpx.Response] = None
        self.token_calls = 0
        self.delay = 0.0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        url = str(request.url)
        if url == TOKEN_URL:
            self.token_calls += 1
            if self.token_response is not None:
                return self.token_response
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-{self.token_calls}",
                    "refresh_token": f"refresh-{self.token_calls}",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                },
            )
        if url == REVOKE_URL:
            return httpx.Response(200)
        if self.api_responses:
            return self.api_responses.pop(0)
        return httpx.Response(200, json={"id": "acct-1", "name": "Mock Account"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def api_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(API_URL)]

    def token_forms(self) -> List[dict]:
        return [
            dict(parse_qsl(r.content.decode()))
            for r in self.requests
            if str(r.url) == TOKEN_URL
        ]


@pytest.fixture
def store():
    return MemoryConnectionStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(sink, provider):
    reg = IntegrationRegistry(events=sink, http_client=provider.client())
    reg.register("mock", MockConnector, MockConnector.metadata)
    reg.register("mock-pkce", PkceMockConnector, PkceMockConnector.metadata)
    reg.register("mock-key", KeyMockConnector, KeyMockConnector.metadata)
    reg.register("mock-basic", BasicMockConnector, BasicMockConnector.metadata)
    return reg


@pytest.fixture
def make_connector(store, registry):
    """Async factory: persist a connection and return its connector."""

    async def _make(integration_type: str = "mock", **fields) -> BaseConnector:
        connection = await store.save_connection(
            Connection(property_id="prop-1", integration_type=integration_type, **fields)
        )
        return registry.create(integration_type, connection, store)

    return _make
