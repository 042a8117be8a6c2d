"""
HTTP-level tests for the integration routes, driven through the ASGI app.
"""

import hashlib
import hmac
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from connectors.webhooks import WebhookManager
from main import create_app
from utils.schemas import Connection, ConnectionStatus, IntegrationEventType

PREFIX = "/api/v1/integrations"


@pytest.fixture
def app(store, registry, sink):
    return create_app(store=store, registry=registry, events=sink)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _create(client, integration_type="mock", **body):
    resp = await client.post(
        f"{PREFIX}/connection",
        json={"propertyId": "prop-1", "integrationType": integration_type, **body},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestRegistryRoutes:
    @pytest.mark.asyncio
    async def test_available(self, client):
        resp = await client.get(f"{PREFIX}/available")
        assert resp.status_code == 200
        assert {item["type"] for item in resp.json()} == {"mock", "mock-pkce", "mock-key", "mock-basic"}

    @pytest.mark.asyncio
    async def test_metadata(self, client):
        resp = await client.get(f"{PREFIX}/metadata/MOCK")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Mock"

        missing = await client.get(f"{PREFIX}/metadata/nope")
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.json()["status"] == "ok"


class TestConnectionRoutes:
    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self, client):
        resp = await client.post(
            f"{PREFIX}/connection", json={"propertyId": "p", "integrationType": "nope"}
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "UNKNOWN_INTEGRATION"

    @pytest.mark.asyncio
    async def test_body_validation(self, client):
        resp = await client.post(f"{PREFIX}/connection", json={"name": "no property"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]

    @pytest.mark.asyncio
    async def test_create_redacts_secrets(self, client):
        created = await _create(client, "Mock-Key", apiKey="super-secret")

        assert created["integration_type"] == "mock-key"
        assert created["api_key"] == "[REDACTED]"
        assert created["status"] == ConnectionStatus.AUTHORIZED.value

        fetched = (await client.get(f"{PREFIX}/connection/{created['id']}")).json()
        assert "super-secret" not in str(fetched)

    @pytest.mark.asyncio
    async def test_list_patch_delete(self, client, store):
        created = await _create(client, name="First")
        await _create(client)

        listed = (await client.get(f"{PREFIX}/property/prop-1")).json()
        assert len(listed) == 2

        patched = await client.patch(
            f"{PREFIX}/connection/{created['id']}", json={"name": "Renamed"}
        )
        assert patched.json()["name"] == "Renamed"

        deleted = await client.delete(f"{PREFIX}/connection/{created['id']}")
        assert deleted.json() == {"success": True}
        assert (await client.get(f"{PREFIX}/connection/{created['id']}")).status_code == 404
        assert (await client.delete(f"{PREFIX}/connection/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_test_and_metadata_endpoints(self, client, store):
        connection = await store.save_connection(
            Connection(property_id="prop-1", integration_type="mock", oauth_access_token="a")
        )

        tested = await client.post(f"{PREFIX}/connection/{connection.id}/test")
        assert tested.json() == {"success": True}

        meta = (await client.get(f"{PREFIX}/connection/{connection.id}/metadata")).json()
        assert meta["account_name"] == "Mock Account"


class TestOAuthRoutes:
    async def _authorize(self, client, connection_id, **params):
        resp = await client.get(
            f"{PREFIX}/connection/{connection_id}/authorize", params=params
        )
        assert resp.status_code == 302, resp.text
        return {k: v[0] for k, v in parse_qs(urlparse(resp.headers["location"]).query).items()}

    @pytest.mark.asyncio
    async def test_authorize_then_callback(self, client, store, sink):
        created = await _create(client)
        query = await self._authorize(client, created["id"], returnUrl="/settings")

        resp = await client.get(
            f"{PREFIX}/callback/mock", params={"code": "abc", "state": query["state"]}
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "connectionId": created["id"],
            "returnUrl": "/settings",
        }
        stored = await store.get_connection(created["id"])
        assert stored.oauth_access_token == "access-1"
        assert IntegrationEventType.AUTH_COMPLETED in sink.types()

        replay = await client.get(
            f"{PREFIX}/callback/mock", params={"code": "abc", "state": query["state"]}
        )
        assert replay.status_code == 400
        assert replay.json()["code"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_callback_with_unknown_state(self, client, provider):
        created = await _create(client)
        await self._authorize(client, created["id"])

        resp = await client.get(f"{PREFIX}/callback/mock", params={"code": "abc", "state": "forged"})

        assert resp.status_code == 400
        assert provider.token_calls == 0

    @pytest.mark.asyncio
    async def test_callback_for_other_type(self, client, provider):
        created = await _create(client)
        query = await self._authorize(client, created["id"])

        resp = await client.get(
            f"{PREFIX}/callback/mock-pkce", params={"code": "abc", "state": query["state"]}
        )

        assert resp.status_code == 400
        assert provider.token_calls == 0

    @pytest.mark.asyncio
    async def test_provider_denial(self, client):
        created = await _create(client)
        query = await self._authorize(client, created["id"])

        resp = await client.get(
            f"{PREFIX}/callback/mock",
            params={"state": query["state"], "error": "access_denied"},
        )

        assert resp.status_code == 400
        assert resp.json()["code"] == "OAUTH_ERROR"

    @pytest.mark.asyncio
    async def test_authorize_key_connector(self, client):
        created = await _create(client, "mock-key", apiKey="k")
        resp = await client.get(f"{PREFIX}/connection/{created['id']}/authorize")
        assert resp.status_code == 400
        assert resp.json()["code"] == "NOT_OAUTH2"

    @pytest.mark.asyncio
    async def test_refresh_rate_limited(self, client, store, provider):
        provider.token_response = httpx.Response(429, headers={"Retry-After": "12"})
        connection = await store.save_connection(
            Connection(
                property_id="prop-1",
                integration_type="mock",
                oauth_access_token="a",
                oauth_refresh_token="r",
            )
        )

        resp = await client.post(f"{PREFIX}/connection/{connection.id}/refresh")

        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "12"
        assert resp.json()["retryAfter"] == 12
        assert resp.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_refresh_and_revoke(self, client, store):
        connection = await store.save_connection(
            Connection(
                property_id="prop-1",
                integration_type="mock",
                oauth_access_token="a",
                oauth_refresh_token="r",
            )
        )

        assert (await client.post(f"{PREFIX}/connection/{connection.id}/refresh")).status_code == 200
        assert (await store.get_connection(connection.id)).status == ConnectionStatus.REFRESHED

        assert (await client.post(f"{PREFIX}/connection/{connection.id}/revoke")).status_code == 200
        revoked = await store.get_connection(connection.id)
        assert revoked.status == ConnectionStatus.REVOKED
        assert revoked.oauth_access_token is None


class TestWebhookRoutes:
    @pytest.mark.asyncio
    async def test_webhook_lifecycle(self, client, app):
        created = await _create(client)
        resp = await client.post(
            f"{PREFIX}/connection/{created['id']}/webhook",
            json={"url": "https://app.example.test/hooks", "secret": "s3cr3t"},
        )
        assert resp.status_code == 201
        webhook_id = resp.json()["webhookId"]

        listed = (await client.get(f"{PREFIX}/connection/{created['id']}/webhooks")).json()
        assert listed[0]["webhookId"] == webhook_id
        assert listed[0]["hasSecret"] is True
        assert "secret" not in listed[0]

        body = b'{"event":"ping"}'
        good = "sha256=" + hmac.new(b"s3cr3t", body, hashlib.sha256).hexdigest()
        url = f"{PREFIX}/webhook/{webhook_id}"

        bad = await client.post(url, content=body, headers={"X-Webhook-Signature": "sha256=00"})
        assert bad.status_code == 401

        ok = await client.post(url, content=body, headers={"X-Webhook-Signature": good})
        assert ok.json() == {"success": True, "event": "ping"}
        await app.state.webhooks.drain()

        await client.post(f"{url}/pause")
        paused = await client.post(url, content=body, headers={"X-Webhook-Signature": good})
        assert paused.status_code == 409

        await client.post(f"{url}/resume")
        await client.delete(url)
        gone = await client.post(url, content=body, headers={"X-Webhook-Signature": good})
        assert gone.status_code == 404

    @pytest.mark.asyncio
    async def test_webhook_for_missing_connection(self, client):
        resp = await client.post(
            f"{PREFIX}/connection/missing/webhook", json={"url": "https://x.test"}
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_connection_view_hides_webhook_secret(self, client):
        created = await _create(client)
        await client.post(
            f"{PREFIX}/connection/{created['id']}/webhook",
            json={"url": "https://app.example.test/hooks", "secret": "s3cr3t"},
        )
        fetched = (await client.get(f"{PREFIX}/connection/{created['id']}")).json()
        assert fetched["config"]["webhooks"][0]["secret"] == "[REDACTED]"

    @pytest.mark.asyncio
    async def test_default_url_is_public_endpoint(self, client):
        created = await _create(client)
        resp = await client.post(f"{PREFIX}/connection/{created['id']}/webhook", json={})
        webhook_id = resp.json()["webhookId"]

        listed = (await client.get(f"{PREFIX}/connection/{created['id']}/webhooks")).json()
        assert listed[0]["url"].endswith(f"/api/v1/integrations/webhook/{webhook_id}")

    @pytest.mark.asyncio
    async def test_config_patch_keeps_stored_webhooks(self, client, store):
        created = await _create(client)
        resp = await client.post(
            f"{PREFIX}/connection/{created['id']}/webhook",
            json={"url": "https://app.example.test/hooks", "secret": "s3cr3t"},
        )
        webhook_id = resp.json()["webhookId"]

        # echo the redacted view back with one extra key
        fetched = (await client.get(f"{PREFIX}/connection/{created['id']}")).json()
        patched = await client.patch(
            f"{PREFIX}/connection/{created['id']}",
            json={"config": {**fetched["config"], "portalId": "1"}},
        )
        assert patched.status_code == 200
        assert patched.json()["config"]["portalId"] == "1"

        # a config without the webhooks key
        await client.patch(
            f"{PREFIX}/connection/{created['id']}",
            json={"name": "Renamed", "config": {"portalId": "2"}},
        )

        stored = await store.get_connection(created["id"])
        assert stored.name == "Renamed"
        assert stored.config["portalId"] == "2"
        assert stored.config["webhooks"][0]["secret"] == "s3cr3t"

        fresh = WebhookManager(store)
        assert await fresh.restore() == 1
        assert fresh.get_webhook(webhook_id).config.secret == "s3cr3t"

    @pytest.mark.asyncio
    async def test_config_patch_unknown_connection(self, client):
        resp = await client.patch(f"{PREFIX}/connection/missing", json={"config": {"a": 1}})
        assert resp.status_code == 404
