"""
IntegrationRegistry — maps integration type names to connector classes.

The registry is a plain instance built at startup (see
``connectors.catalog``) and handed to the HTTP layer through app state.
It owns the refresh gate and event sink shared by every connector it
creates.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from connectors.base import BaseConnector
from connectors.errors import UnknownIntegrationError
from connectors.events import EventSink, LoggingEventSink
from connectors.refresh import RefreshGate
from connectors.storage import ConnectionStore
from utils.schemas import Connection, ConnectorMetadata

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[..., BaseConnector]


class IntegrationRegistry:
    """Registry of connector factories keyed by lower-cased type name."""

    def __init__(
        self,
        *,
        events: Optional[EventSink] = None,
        refresh_gate: Optional[RefreshGate] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.events = events or LoggingEventSink()
        self.http_client = http_client
        self.refresh_gate = refresh_gate if refresh_gate is not None else RefreshGate()
        self._factories: Dict[str, ConnectorFactory] = {}
        self._metadata: Dict[str, ConnectorMetadata] = {}

    def register(
        self,
        integration_type: str,
        factory: ConnectorFactory,
        metadata: ConnectorMetadata,
    ) -> None:
        """Register (or replace) a connector.  Last registration wins."""
        key = integration_type.lower()
        if key in self._factories:
            logger.info("Connector %s re-registered, replacing previous entry", key)
        self._factories[key] = factory
        self._metadata[key] = metadata
        logger.info("Connector registered: %s (%s)", metadata.name, key)

    def unregister(self, integration_type: str) -> bool:
        key = integration_type.lower()
        self._metadata.pop(key, None)
        return self._factories.pop(key, None) is not None

    def has(self, integration_type: str) -> bool:
        return integration_type.lower() in self._factories

    def types(self) -> List[str]:
        return list(self._factories)

    def create(
        self,
        integration_type: str,
        connection: Connection,
        store: ConnectionStore,
        **kwargs: Any,
    ) -> BaseConnector:
        """
        Instantiate the connector for ``integration_type`` bound to
        ``connection``.  Constructor errors propagate unchanged.
        """
        factory = self._factories.get(integration_type.lower())
        if factory is None:
            raise UnknownIntegrationError(integration_type)
        kwargs.setdefault("events", self.events)
        kwargs.setdefault("refresh_gate", self.refresh_gate)
        if self.http_client is not None:
            kwargs.setdefault("http_client", self.http_client)
        return factory(connection, store, **kwargs)

    def create_for(self, connection: Connection, store: ConnectionStore, **kwargs: Any) -> BaseConnector:
        """Shortcut for ``create(connection.integration_type, connection, store)``."""
        return self.create(connection.integration_type, connection, store, **kwargs)

    def get_metadata(self, integration_type: str) -> Optional[ConnectorMetadata]:
        return self._metadata.get(integration_type.lower())

    def list_available(self) -> List[Dict[str, Any]]:
        return [
            {"type": key, **meta.model_dump(mode="json")}
            for key, meta in self._metadata.items()
        ]
