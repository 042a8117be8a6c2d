"""
Integration API routes — connections, OAuth authorize/callback, token
lifecycle and webhooks.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from api.dependencies import get_pending, get_registry, get_store, get_webhooks
from config.settings import config
from connectors.base import BaseConnector
from connectors.errors import IntegrationError, InvalidStateError, NotFoundError, UnknownIntegrationError
from connectors.registry import IntegrationRegistry
from connectors.storage import ConnectionStore
from connectors.webhooks import WebhookManager
from utils.schemas import (
    Connection,
    ConnectionStatus,
    CreateConnectionRequest,
    OAuth2State,
    RegisterWebhookRequest,
    UpdateConnectionRequest,
    WebhookConfig,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


# ── Pending authorizations (state → connection) ────────────────────────


class PendingAuthorizations:
    """
    States issued by ``/authorize`` and awaiting their ``/callback``.
    Entries are single use and expire after ``ttl_seconds``.
    """

    def __init__(self, ttl_seconds: int = 600) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[str, OAuth2State, float]] = {}

    def put(self, connection_id: str, state: OAuth2State) -> None:
        self._prune()
        self._entries[state.state] = (connection_id, state, time.monotonic() + self.ttl_seconds)

    def pop(self, state_value: str) -> Optional[Tuple[str, OAuth2State]]:
        entry = self._entries.pop(state_value, None)
        if entry is None or entry[2] < time.monotonic():
            return None
        return entry[0], entry[1]

    def _prune(self) -> None:
        now = time.monotonic()
        for key in [k for k, (_, _, exp) in self._entries.items() if exp < now]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


# ── Helpers ────────────────────────────────────────────────────────────


async def _load_connection(store: ConnectionStore, connection_id: str) -> Connection:
    connection = await store.get_connection(connection_id)
    if connection is None:
        raise NotFoundError("Connection not found")
    return connection


async def _connector_for(
    connection_id: str,
    registry: IntegrationRegistry,
    store: ConnectionStore,
) -> BaseConnector:
    connection = await _load_connection(store, connection_id)
    return registry.create_for(connection, store)


def _webhook_view(webhooks: WebhookManager, connection_id: str) -> List[Dict[str, Any]]:
    return [
        {
            "webhookId": r.webhook_id,
            "url": r.config.url,
            "events": r.config.events,
            "active": r.config.active,
            "hasSecret": bool(r.config.secret),
            "createdAt": r.created_at.isoformat(),
        }
        for r in webhooks.list_webhooks(connection_id)
    ]


# ── Registry ───────────────────────────────────────────────────────────


@router.get("/available")
async def list_available(registry: IntegrationRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    """All registered integration types with their metadata."""
    return registry.list_available()


@router.get("/metadata/{integration_type}")
async def get_integration_metadata(
    integration_type: str,
    registry: IntegrationRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    meta = registry.get_metadata(integration_type)
    if meta is None:
        raise NotFoundError(f"Integration type '{integration_type}' not found")
    return {"type": integration_type.lower(), **meta.model_dump(mode="json")}


# ── Connections ────────────────────────────────────────────────────────


@router.get("/property/{property_id}")
async def list_property_connections(
    property_id: str,
    store: ConnectionStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    return [c.redacted() for c in await store.get_connections_by_property(property_id)]


@router.get("/connection/{connection_id}")
async def get_connection(
    connection_id: str,
    store: ConnectionStore = Depends(get_store),
) -> Dict[str, Any]:
    return (await _load_connection(store, connection_id)).redacted()


@router.post("/connection", status_code=status.HTTP_201_CREATED)
async def create_connection(
    body: CreateConnectionRequest,
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
) -> Dict[str, Any]:
    if not registry.has(body.integration_type):
        raise UnknownIntegrationError(body.integration_type)

    connection = await store.save_connection(
        Connection(
            property_id=body.property_id,
            integration_type=body.integration_type.lower(),
            name=body.name,
            config=body.config,
            api_key=body.api_key,
            api_secret=body.api_secret,
            status=ConnectionStatus.AUTHORIZED if body.api_key else ConnectionStatus.PENDING,
        )
    )
    logger.info(
        "Connection %s created: property=%s type=%s",
        connection.id,
        connection.property_id,
        connection.integration_type,
    )
    return connection.redacted()


@router.patch("/connection/{connection_id}")
async def update_connection(
    connection_id: str,
    body: UpdateConnectionRequest,
    store: ConnectionStore = Depends(get_store),
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, Any]:
    updates = body.model_dump(exclude_unset=True)
    config_update = updates.pop("config", None)
    updated = None
    if config_update is not None:
        updated = await webhooks.replace_connection_config(connection_id, config_update)
    if updates or updated is None:
        updated = await store.update_connection(connection_id, updates)
    return updated.redacted()


@router.delete("/connection/{connection_id}")
async def delete_connection(
    connection_id: str,
    store: ConnectionStore = Depends(get_store),
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, Any]:
    if not await store.delete_connection(connection_id):
        raise NotFoundError("Connection not found")
    for record in webhooks.list_webhooks(connection_id):
        await webhooks.unregister_webhook(record.webhook_id)
    return {"success": True}


@router.post("/connection/{connection_id}/test")
async def test_connection(
    connection_id: str,
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
) -> Dict[str, Any]:
    connector = await _connector_for(connection_id, registry, store)
    return {"success": await connector.test_connection()}


@router.get("/connection/{connection_id}/metadata")
async def get_connection_metadata(
    connection_id: str,
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
) -> Dict[str, Any]:
    connector = await _connector_for(connection_id, registry, store)
    meta = await connector.get_service_metadata()
    return meta.model_dump(mode="json")


# ── OAuth2 flow ────────────────────────────────────────────────────────


@router.get("/connection/{connection_id}/authorize")
async def authorize(
    connection_id: str,
    return_url: Optional[str] = Query(None, alias="returnUrl"),
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
    pending: PendingAuthorizations = Depends(get_pending),
) -> RedirectResponse:
    """Redirect the browser to the provider's consent screen."""
    connector = await _connector_for(connection_id, registry, store)
    auth_url = await connector.build_authorization_url(return_url=return_url)
    if auth_url is None or connector.oauth_state is None:
        raise IntegrationError("This integration does not support OAuth2", "NOT_OAUTH2", 400)
    pending.put(connector.connection.id, connector.oauth_state)
    return RedirectResponse(auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/callback/{integration_type}")
async def oauth_callback(
    integration_type: str,
    request: Request,
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
    pending: PendingAuthorizations = Depends(get_pending),
) -> Dict[str, Any]:
    """
    Provider redirects here after consent.  The ``state`` must match an
    outstanding authorization for a connection of ``integration_type``.
    """
    params = dict(request.query_params)
    state_value = params.get("state")
    issued = pending.pop(state_value) if state_value else None
    if issued is None:
        raise InvalidStateError()
    connection_id, state = issued

    connection = await _load_connection(store, connection_id)
    if connection.integration_type.lower() != integration_type.lower():
        raise InvalidStateError("State does not belong to this integration")

    connector = registry.create_for(connection, store)
    connector.restore_state(state)
    await connector.handle_callback(params)
    logger.info("OAuth connected: connection=%s type=%s", connection_id, integration_type)
    return {"success": True, "connectionId": connection_id, "returnUrl": state.return_url}


@router.post("/connection/{connection_id}/refresh")
async def refresh_connection(
    connection_id: str,
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
) -> Dict[str, Any]:
    connector = await _connector_for(connection_id, registry, store)
    await connector.refresh_token()
    return {"success": True}


@router.post("/connection/{connection_id}/revoke")
async def revoke_connection(
    connection_id: str,
    registry: IntegrationRegistry = Depends(get_registry),
    store: ConnectionStore = Depends(get_store),
) -> Dict[str, Any]:
    connector = await _connector_for(connection_id, registry, store)
    await connector.revoke_access()
    return {"success": True}


# ── Webhooks ───────────────────────────────────────────────────────────


@router.post("/connection/{connection_id}/webhook", status_code=status.HTTP_201_CREATED)
async def register_webhook(
    connection_id: str,
    body: RegisterWebhookRequest,
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, str]:
    webhook_id = await webhooks.register_webhook(
        connection_id,
        WebhookConfig(
            url=body.url or config.webhook_public_base,
            events=body.events,
            secret=body.secret,
            active=True,
        ),
    )
    return {"webhookId": webhook_id}


@router.get("/connection/{connection_id}/webhooks")
async def list_webhooks(
    connection_id: str,
    store: ConnectionStore = Depends(get_store),
    webhooks: WebhookManager = Depends(get_webhooks),
) -> List[Dict[str, Any]]:
    await _load_connection(store, connection_id)
    return _webhook_view(webhooks, connection_id)


@router.post("/webhook/{webhook_id}")
async def receive_webhook(
    webhook_id: str,
    request: Request,
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, Any]:
    """Inbound delivery.  Verified before responding; handled in the background."""
    raw_body = await request.body()
    payload = await webhooks.handle_incoming(webhook_id, request.headers, raw_body)
    return {"success": True, "event": payload.event}


@router.post("/webhook/{webhook_id}/pause")
async def pause_webhook(
    webhook_id: str,
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, Any]:
    await webhooks.pause_webhook(webhook_id)
    return {"success": True}


@router.post("/webhook/{webhook_id}/resume")
async def resume_webhook(
    webhook_id: str,
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, Any]:
    await webhooks.resume_webhook(webhook_id)
    return {"success": True}


@router.delete("/webhook/{webhook_id}")
async def delete_webhook(
    webhook_id: str,
    webhooks: WebhookManager = Depends(get_webhooks),
) -> Dict[str, Any]:
    await webhooks.unregister_webhook(webhook_id)
    return {"success": True}
