"""
Lifecycle notifications.

Connectors and the webhook manager publish ``IntegrationEvent`` objects to
an ``EventSink`` supplied by the caller.  ``publish`` is awaited inline, so
delivery order is the order of the state transitions and a slow sink slows
the publisher (no unbounded buffering).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from utils.schemas import IntegrationEvent

logger = logging.getLogger(__name__)


class EventSink(ABC):
    @abstractmethod
    async def publish(self, event: IntegrationEvent) -> None:
        ...


class LoggingEventSink(EventSink):
    """Default sink — writes every event to the log."""

    async def publish(self, event: IntegrationEvent) -> None:
        if event.error:
            logger.warning(
                "[%s] connection=%s error=%s",
                event.event_type.value,
                event.connection_id,
                event.error,
            )
        else:
            logger.info("[%s] connection=%s", event.event_type.value, event.connection_id)
