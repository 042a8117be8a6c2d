"""
Connection store contract and the in-memory reference implementation.

The framework never assumes a backing technology; it relies only on each
operation below being atomic for a single record.  ``update_tokens`` in
particular writes access token, refresh token and expiry together.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from connectors.encryption import TokenCipher
from connectors.errors import NotFoundError, ValidationError
from utils.schemas import Connection, ConnectionStatus, utcnow

logger = logging.getLogger(__name__)

# Fields a partial update may never touch.
_IMMUTABLE_FIELDS = {"id", "created_at"}


def new_connection_id() -> str:
    return uuid.uuid4().hex


def check_update(existing: Connection, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Strip immutable fields and reject a change of integration type."""
    new_type = updates.get("integration_type")
    if new_type is not None and new_type.lower() != existing.integration_type.lower():
        raise ValidationError("A connection's integration type cannot change")
    unknown = set(updates) - set(Connection.model_fields)
    if unknown:
        raise ValidationError(f"Unknown connection fields: {sorted(unknown)}")
    return {k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS}


def matches(connection: Connection, criteria: Dict[str, Any]) -> bool:
    for key, value in criteria.items():
        if getattr(connection, key, None) != value:
            return False
    return True


class ConnectionStore(ABC):
    """Persistence contract consumed by connectors, the webhook manager and routes."""

    cipher: Optional[TokenCipher] = None

    # ── basic CRUD ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        ...

    @abstractmethod
    async def get_connections_by_property(self, property_id: str) -> List[Connection]:
        ...

    @abstractmethod
    async def get_connections_by_type(self, integration_type: str) -> List[Connection]:
        ...

    @abstractmethod
    async def save_connection(self, connection: Connection) -> Connection:
        """Upsert.  Assigns ``id`` and timestamps when missing."""
        ...

    @abstractmethod
    async def update_connection(self, connection_id: str, updates: Dict[str, Any]) -> Connection:
        """Partial update.  Raises ``NotFoundError`` for unknown ids."""
        ...

    @abstractmethod
    async def delete_connection(self, connection_id: str) -> bool:
        ...

    # ── bulk ────────────────────────────────────────────────────────────

    async def bulk_save(self, connections: Iterable[Connection]) -> List[Connection]:
        return [await self.save_connection(c) for c in connections]

    async def bulk_delete(self, connection_ids: Iterable[str]) -> int:
        deleted = 0
        for cid in connection_ids:
            if await self.delete_connection(cid):
                deleted += 1
        return deleted

    # ── queries ─────────────────────────────────────────────────────────

    @abstractmethod
    async def find_connections(self, criteria: Optional[Dict[str, Any]] = None) -> List[Connection]:
        ...

    async def count_connections(self, criteria: Optional[Dict[str, Any]] = None) -> int:
        return len(await self.find_connections(criteria))

    # ── dedicated writes ────────────────────────────────────────────────

    @abstractmethod
    async def update_tokens(
        self,
        connection_id: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        status: Optional[ConnectionStatus] = None,
    ) -> Connection:
        """Write the whole token triple (``None`` clears a field) in one step."""
        ...

    @abstractmethod
    async def update_metadata(self, connection_id: str, metadata: Dict[str, Any]) -> Connection:
        ...

    # ── at-rest protection hooks ────────────────────────────────────────

    def encrypt_sensitive_data(self, data: str) -> str:
        return self.cipher.encrypt(data) if self.cipher else data

    def decrypt_sensitive_data(self, data: str) -> str:
        return self.cipher.decrypt(data) if self.cipher else data


class MemoryConnectionStore(ConnectionStore):
    """Process-local store.  Hands out copies so callers never alias stored records."""

    def __init__(self, cipher: Optional[TokenCipher] = None) -> None:
        self.cipher = cipher
        self._records: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        record = self._records.get(str(connection_id))
        return record.model_copy(deep=True) if record else None

    async def get_connections_by_property(self, property_id: str) -> List[Connection]:
        return await self.find_connections({"property_id": str(property_id)})

    async def get_connections_by_type(self, integration_type: str) -> List[Connection]:
        wanted = integration_type.lower()
        return [
            c.model_copy(deep=True)
            for c in self._records.values()
            if c.integration_type.lower() == wanted
        ]

    async def save_connection(self, connection: Connection) -> Connection:
        async with self._lock:
            record = connection.model_copy(deep=True)
            now = utcnow()
            if not record.id:
                record.id = new_connection_id()
            existing = self._records.get(record.id)
            if existing is not None:
                check_update(existing, {"integration_type": record.integration_type})
                record.created_at = existing.created_at
            record.created_at = record.created_at or now
            record.updated_at = now
            self._records[record.id] = record
            return record.model_copy(deep=True)

    async def update_connection(self, connection_id: str, updates: Dict[str, Any]) -> Connection:
        async with self._lock:
            existing = self._records.get(str(connection_id))
            if existing is None:
                raise NotFoundError("Connection not found")
            changes = check_update(existing, updates)
            updated = existing.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            # re-validate so bad values never land in the store
            updated = Connection.model_validate(updated.model_dump())
            self._records[updated.id] = updated
            return updated.model_copy(deep=True)

    async def delete_connection(self, connection_id: str) -> bool:
        async with self._lock:
            return self._records.pop(str(connection_id), None) is not None

    async def find_connections(self, criteria: Optional[Dict[str, Any]] = None) -> List[Connection]:
        criteria = criteria or {}
        return [c.model_copy(deep=True) for c in self._records.values() if matches(c, criteria)]

    async def update_tokens(
        self,
        connection_id: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        status: Optional[ConnectionStatus] = None,
    ) -> Connection:
        changes: Dict[str, Any] = {
            "oauth_access_token": access_token,
            "oauth_refresh_token": refresh_token,
            "oauth_expires_at": expires_at,
        }
        if status is not None:
            changes["status"] = status
        return await self.update_connection(connection_id, changes)

    async def update_metadata(self, connection_id: str, metadata: Dict[str, Any]) -> Connection:
        return await self.update_connection(connection_id, {"metadata": dict(metadata)})
