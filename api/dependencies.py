"""
FastAPI dependencies (shared across routes).

Everything is wired once in ``main.create_app`` and kept on ``app.state``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from connectors.registry import IntegrationRegistry
from connectors.storage import ConnectionStore
from connectors.webhooks import WebhookManager

if TYPE_CHECKING:
    from connectors.routes import PendingAuthorizations


def get_registry(request: Request) -> IntegrationRegistry:
    return request.app.state.registry


def get_store(request: Request) -> ConnectionStore:
    return request.app.state.store


def get_webhooks(request: Request) -> WebhookManager:
    return request.app.state.webhooks


def get_pending(request: Request) -> "PendingAuthorizations":
    return request.app.state.pending
