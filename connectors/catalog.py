"""
Startup registration table.

Every connector the service ships is listed here; there is no
filesystem discovery.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Type

from connectors.base import BaseConnector
from connectors.events import EventSink
from connectors.ga4 import GA4Connector
from connectors.hubspot import HubSpotConnector
from connectors.registry import IntegrationRegistry
from connectors.webhooks import WebhookManager
from connectors.wordpress import WordPressConnector

logger = logging.getLogger(__name__)

# ── All known connectors, add new ones here ───────────────────────────────

BUILTIN_CONNECTORS: Tuple[Tuple[str, Type[BaseConnector]], ...] = (
    ("hubspot", HubSpotConnector),
    ("ga4", GA4Connector),
    ("wordpress", WordPressConnector),
)


def build_registry(events: Optional[EventSink] = None) -> IntegrationRegistry:
    registry = IntegrationRegistry(events=events)
    for integration_type, connector_cls in BUILTIN_CONNECTORS:
        if not connector_cls.is_configured():
            logger.warning(
                "Connector %s registered without client credentials; authorization will fail",
                integration_type,
            )
        registry.register(integration_type, connector_cls, connector_cls.metadata)
    return registry


def register_webhook_handlers(manager: WebhookManager) -> None:
    """Connectors that process inbound webhooks expose ``handle_webhook``."""
    for integration_type, connector_cls in BUILTIN_CONNECTORS:
        handler = getattr(connector_cls, "handle_webhook", None)
        if handler is not None:
            manager.register_handler(integration_type, handler)
