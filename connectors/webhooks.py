"""
WebhookManager — registration, HMAC verification and dispatch of inbound
provider webhooks.

Routing of a verified delivery:

    webhook id → owning connection id (recorded at registration)
               → connection.integration_type (lower-cased)
               → handler registered for that type

Verification happens before ``handle_incoming`` returns; the handler runs
in a background task so a slow or failing handler never delays the
provider's acknowledgement.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from connectors.errors import NotFoundError, WebhookInactiveError, WebhookSignatureError
from connectors.events import EventSink, LoggingEventSink
from connectors.storage import ConnectionStore
from utils.schemas import (
    Connection,
    IntegrationEvent,
    IntegrationEventType,
    WebhookConfig,
    WebhookPayload,
    WebhookRecord,
)

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[WebhookPayload, Connection], Awaitable[None]]

SIGNATURE_HEADERS = (
    "x-webhook-signature",
    "x-hub-signature-256",
    "x-hub-signature",
    "x-signature-256",
    "x-signature",
)
EVENT_HEADERS = ("x-webhook-event", "x-github-event", "x-event-type")
SUPPORTED_ALGORITHMS = frozenset({"sha1", "sha256", "sha384", "sha512"})


def compute_signature(secret: str, raw_body: bytes, algorithm: str = "sha256") -> str:
    return hmac.new(secret.encode(), raw_body, algorithm).hexdigest()


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """
    Check ``signature`` (``<hex>`` or ``<algorithm>=<hex>``) against
    HMAC(algorithm, secret, raw_body).  Every malformed input is a plain
    ``False``.
    """
    signature = signature.strip()
    algorithm, sep, digest = signature.partition("=")
    if not sep:
        algorithm, digest = "sha256", signature
    algorithm = algorithm.strip().lower()
    if algorithm not in SUPPORTED_ALGORITHMS:
        return False
    try:
        provided = bytes.fromhex(digest.strip())
    except ValueError:
        return False
    expected = hmac.new(secret.encode(), raw_body, algorithm).digest()
    return hmac.compare_digest(expected, provided)


def _find_header(headers: Mapping[str, str], names: tuple) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


class WebhookManager:
    """In-process webhook table backed by each connection's ``config["webhooks"]``."""

    def __init__(self, store: ConnectionStore, *, events: Optional[EventSink] = None) -> None:
        self.store = store
        self.events = events or LoggingEventSink()
        self._handlers: Dict[str, WebhookHandler] = {}
        self._webhooks: Dict[str, WebhookRecord] = {}
        self._pending: Set[asyncio.Task] = set()
        self._config_lock = asyncio.Lock()

    # ── Handlers ────────────────────────────────────────────────────────

    def register_handler(self, integration_type: str, handler: WebhookHandler) -> None:
        self._handlers[integration_type.lower()] = handler

    def unregister_handler(self, integration_type: str) -> None:
        self._handlers.pop(integration_type.lower(), None)

    # ── Registration ────────────────────────────────────────────────────

    async def register_webhook(self, connection_id: str, config: WebhookConfig) -> str:
        """Bind a new webhook to ``connection_id`` and return its id (``wh_<hex>``)."""
        connection = await self.store.get_connection(connection_id)
        if connection is None:
            raise NotFoundError("Connection not found")

        webhook_id = f"wh_{secrets.token_hex(16)}"
        bound = config.model_copy(update={"url": f"{config.url.rstrip('/')}/{webhook_id}"})
        record = WebhookRecord(webhook_id=webhook_id, connection_id=connection.id, config=bound)

        async with self._config_lock:
            await self._write_stored(connection.id, webhook_id, _record_to_stored(record))
        self._webhooks[webhook_id] = record

        logger.info("Webhook %s registered for connection %s", webhook_id, connection.id)
        await self._emit(
            IntegrationEventType.WEBHOOK_REGISTERED,
            record,
            data={"url": bound.url, "events": bound.events},
        )
        return webhook_id

    async def unregister_webhook(self, webhook_id: str) -> None:
        record = self._require(webhook_id)
        async with self._config_lock:
            await self._write_stored(record.connection_id, webhook_id, None)
        self._webhooks.pop(webhook_id, None)
        await self._emit(IntegrationEventType.WEBHOOK_UNREGISTERED, record)

    async def pause_webhook(self, webhook_id: str) -> None:
        await self._set_active(webhook_id, False)
        await self._emit(IntegrationEventType.WEBHOOK_PAUSED, self._webhooks[webhook_id])

    async def resume_webhook(self, webhook_id: str) -> None:
        await self._set_active(webhook_id, True)
        await self._emit(IntegrationEventType.WEBHOOK_RESUMED, self._webhooks[webhook_id])

    async def _set_active(self, webhook_id: str, active: bool) -> None:
        record = self._require(webhook_id)
        updated = record.model_copy(
            update={"config": record.config.model_copy(update={"active": active})}
        )
        async with self._config_lock:
            await self._write_stored(record.connection_id, webhook_id, _record_to_stored(updated))
        self._webhooks[webhook_id] = updated

    async def replace_connection_config(
        self, connection_id: str, new_config: Dict[str, Any]
    ) -> Connection:
        """
        Replace a connection's config while keeping the stored
        ``webhooks`` list; a client-sent ``webhooks`` key is ignored.
        """
        async with self._config_lock:
            connection = await self.store.get_connection(connection_id)
            if connection is None:
                raise NotFoundError("Connection not found")
            merged = {k: v for k, v in new_config.items() if k != "webhooks"}
            if "webhooks" in connection.config:
                merged["webhooks"] = connection.config["webhooks"]
            return await self.store.update_connection(connection_id, {"config": merged})

    def get_webhook(self, webhook_id: str) -> Optional[WebhookRecord]:
        return self._webhooks.get(webhook_id)

    def list_webhooks(self, connection_id: Optional[str] = None) -> List[WebhookRecord]:
        return [
            r for r in self._webhooks.values()
            if connection_id is None or r.connection_id == connection_id
        ]

    def active_webhooks(self) -> List[WebhookRecord]:
        return [r for r in self._webhooks.values() if r.config.active]

    async def restore(self) -> int:
        """Rebuild the in-process table from stored connection configs."""
        restored = 0
        for connection in await self.store.find_connections():
            for item in connection.config.get("webhooks") or []:
                if not isinstance(item, dict) or not item.get("id"):
                    continue
                record = _record_from_stored(connection.id, item)
                self._webhooks[record.webhook_id] = record
                restored += 1
        if restored:
            logger.info("Restored %d webhooks from storage", restored)
        return restored

    # ── Inbound ─────────────────────────────────────────────────────────

    async def handle_incoming(
        self,
        webhook_id: str,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> WebhookPayload:
        """
        Verify and accept a delivery.  Raises before any handler runs when
        the webhook is unknown, paused, or its signature does not verify.
        """
        record = self._require(webhook_id)
        if not record.config.active:
            raise WebhookInactiveError(webhook_id)

        lowered = {k.lower(): v for k, v in headers.items()}
        signature = _find_header(lowered, SIGNATURE_HEADERS)
        if record.config.secret:
            if not signature:
                raise WebhookSignatureError("Missing webhook signature")
            if not verify_signature(raw_body, signature, record.config.secret):
                logger.warning("Rejected webhook %s: signature mismatch", webhook_id)
                raise WebhookSignatureError()

        try:
            data: Any = json.loads(raw_body) if raw_body else None
        except ValueError:
            data = None
        event = _find_header(lowered, EVENT_HEADERS)
        if not event and isinstance(data, dict):
            event = data.get("event") or data.get("type")

        payload = WebhookPayload(
            webhook_id=webhook_id,
            connection_id=record.connection_id,
            event=str(event or "unknown"),
            raw_body=raw_body,
            data=data,
            signature=signature,
        )
        await self._emit(IntegrationEventType.WEBHOOK_RECEIVED, record, data={"event": payload.event})

        if not record.config.accepts(payload.event):
            await self._emit(
                IntegrationEventType.WEBHOOK_IGNORED,
                record,
                data={"event": payload.event, "reason": "not subscribed"},
            )
            return payload

        task = asyncio.create_task(self._dispatch(record, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return payload

    async def _dispatch(self, record: WebhookRecord, payload: WebhookPayload) -> None:
        try:
            connection = await self.store.get_connection(record.connection_id)
        except Exception as exc:
            logger.exception("Connection lookup for webhook %s failed", record.webhook_id)
            await self._emit(
                IntegrationEventType.WEBHOOK_ERROR,
                record,
                data={"event": payload.event},
                error=str(exc),
            )
            return
        if connection is None:
            await self._emit(
                IntegrationEventType.WEBHOOK_IGNORED,
                record,
                data={"event": payload.event, "reason": "connection missing"},
            )
            return

        handler = self._handlers.get(connection.integration_type.lower())
        if handler is None:
            await self._emit(
                IntegrationEventType.WEBHOOK_IGNORED,
                record,
                data={"event": payload.event, "reason": "no handler"},
            )
            return

        try:
            await handler(payload, connection)
        except Exception as exc:
            logger.exception("Webhook handler for %s failed", record.webhook_id)
            await self._emit(
                IntegrationEventType.WEBHOOK_ERROR,
                record,
                data={"event": payload.event},
                error=str(exc),
            )
            return

        await self._emit(IntegrationEventType.WEBHOOK_PROCESSED, record, data={"event": payload.event})

    async def drain(self) -> None:
        """Wait for every dispatched handler to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Internals ───────────────────────────────────────────────────────

    def _require(self, webhook_id: str) -> WebhookRecord:
        record = self._webhooks.get(webhook_id)
        if record is None:
            raise NotFoundError("Webhook not found")
        return record

    async def _write_stored(
        self, connection_id: str, webhook_id: str, entry: Optional[Dict[str, Any]]
    ) -> None:
        """Replace (or with ``entry=None`` drop) one webhook in the connection's config."""
        connection = await self.store.get_connection(connection_id)
        if connection is None:
            if entry is None:
                return
            raise NotFoundError("Connection not found")
        hooks = [
            h for h in connection.config.get("webhooks") or []
            if not (isinstance(h, dict) and h.get("id") == webhook_id)
        ]
        if entry is not None:
            hooks.append(entry)
        await self.store.update_connection(
            connection_id, {"config": {**connection.config, "webhooks": hooks}}
        )

    async def _emit(
        self,
        event_type: IntegrationEventType,
        record: WebhookRecord,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self.events.publish(
            IntegrationEvent(
                event_type=event_type,
                connection_id=record.connection_id,
                data={"webhook_id": record.webhook_id, **(data or {})},
                error=error,
            )
        )


def _record_to_stored(record: WebhookRecord) -> Dict[str, Any]:
    return {
        "id": record.webhook_id,
        **record.config.model_dump(mode="json"),
        "created_at": record.created_at.isoformat(),
    }


def _record_from_stored(connection_id: str, item: Dict[str, Any]) -> WebhookRecord:
    data: Dict[str, Any] = {
        "webhook_id": item["id"],
        "connection_id": connection_id,
        "config": {k: item[k] for k in ("url", "events", "secret", "active") if k in item},
    }
    if item.get("created_at"):
        data["created_at"] = item["created_at"]
    return WebhookRecord.model_validate(data)
