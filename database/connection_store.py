"""
SqlConnectionStore — ``ConnectionStore`` backed by SQLAlchemy (async).

Each operation runs in its own session and commits once, so a token
update either lands completely or not at all.  Secret columns are passed
through the store's cipher on the way in and out; callers only ever see
plaintext ``Connection`` models.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.errors import NotFoundError
from connectors.storage import ConnectionStore, check_update, matches, new_connection_id
from database.models import IntegrationConnection
from utils.schemas import Connection, ConnectionStatus, utcnow

logger = logging.getLogger(__name__)

SECRET_FIELDS = ("oauth_access_token", "oauth_refresh_token", "api_key", "api_secret")
# Criteria on these are pushed into SQL; anything else is matched after decryption
_QUERYABLE = ("id", "property_id", "integration_type", "name", "status")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SqlConnectionStore(ConnectionStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: Optional[TokenCipher] = None,
    ) -> None:
        self._session_factory = session_factory
        self.cipher = cipher

    # ── row <-> model ───────────────────────────────────────────────────

    def _to_connection(self, row: IntegrationConnection) -> Connection:
        secrets = {
            field: self.decrypt_sensitive_data(getattr(row, field))
            if getattr(row, field) is not None
            else None
            for field in SECRET_FIELDS
        }
        return Connection(
            id=row.id,
            property_id=row.property_id,
            integration_type=row.integration_type,
            name=row.name,
            oauth_expires_at=_aware(row.oauth_expires_at),
            config=dict(row.config or {}),
            metadata=dict(row.metadata_ or {}),
            status=ConnectionStatus(row.status),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            **secrets,
        )

    def _apply(self, row: IntegrationConnection, connection: Connection) -> None:
        row.property_id = connection.property_id
        row.integration_type = connection.integration_type
        row.name = connection.name
        row.oauth_expires_at = connection.oauth_expires_at
        row.config = connection.model_dump(mode="json")["config"]
        row.metadata_ = connection.model_dump(mode="json")["metadata"]
        row.status = connection.status.value
        row.created_at = connection.created_at
        row.updated_at = connection.updated_at
        for field in SECRET_FIELDS:
            value = getattr(connection, field)
            setattr(row, field, self.encrypt_sensitive_data(value) if value is not None else None)

    # ── CRUD ────────────────────────────────────────────────────────────

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        async with self._session_factory() as session:
            row = await session.get(IntegrationConnection, str(connection_id))
            return self._to_connection(row) if row else None

    async def get_connections_by_property(self, property_id: str) -> List[Connection]:
        return await self.find_connections({"property_id": str(property_id)})

    async def get_connections_by_type(self, integration_type: str) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationConnection).where(
                    func.lower(IntegrationConnection.integration_type) == integration_type.lower()
                )
            )
            return [self._to_connection(r) for r in result.scalars().all()]

    async def save_connection(self, connection: Connection) -> Connection:
        record = connection.model_copy(deep=True)
        now = utcnow()
        async with self._session_factory() as session:
            row = await session.get(IntegrationConnection, record.id) if record.id else None
            if row is None:
                record.id = record.id or new_connection_id()
                record.created_at = record.created_at or now
                row = IntegrationConnection(id=record.id)
                session.add(row)
            else:
                check_update(self._to_connection(row), {"integration_type": record.integration_type})
                record.created_at = _aware(row.created_at)
            record.updated_at = now
            self._apply(row, record)
            await session.commit()
        return record

    async def update_connection(self, connection_id: str, updates: Dict[str, Any]) -> Connection:
        """
        Writes only the columns named in ``updates`` (plus ``updated_at``);
        the row is locked while the merge runs so concurrent partial
        updates of different fields both land.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationConnection)
                .where(IntegrationConnection.id == str(connection_id))
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError("Connection not found")
            existing = self._to_connection(row)
            changes = check_update(existing, updates)
            updated = Connection.model_validate(
                {**existing.model_dump(), **changes, "updated_at": utcnow()}
            )
            await session.execute(
                update(IntegrationConnection)
                .where(IntegrationConnection.id == updated.id)
                .values(self._column_values(updated, [*changes, "updated_at"]))
            )
            await session.commit()
        return updated

    def _column_values(self, connection: Connection, fields: List[str]) -> Dict[Any, Any]:
        dumped = connection.model_dump(mode="json")
        values: Dict[Any, Any] = {}
        for field in fields:
            if field in SECRET_FIELDS:
                value = getattr(connection, field)
                values[field] = self.encrypt_sensitive_data(value) if value is not None else None
            elif field == "metadata":
                values[IntegrationConnection.metadata_] = dumped["metadata"]
            elif field == "config":
                values["config"] = dumped["config"]
            elif field == "status":
                values["status"] = connection.status.value
            else:
                values[field] = getattr(connection, field)
        return values

    async def delete_connection(self, connection_id: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(IntegrationConnection, str(connection_id))
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
        logger.info("Deleted connection %s", connection_id)
        return True

    # ── queries ─────────────────────────────────────────────────────────

    async def find_connections(self, criteria: Optional[Dict[str, Any]] = None) -> List[Connection]:
        criteria = dict(criteria or {})
        stmt = select(IntegrationConnection)
        for key in _QUERYABLE:
            if key in criteria:
                stmt = stmt.where(getattr(IntegrationConnection, key) == _plain(criteria.pop(key)))
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(IntegrationConnection.created_at))
            connections = [self._to_connection(r) for r in result.scalars().all()]
        return [c for c in connections if matches(c, criteria)]

    async def count_connections(self, criteria: Optional[Dict[str, Any]] = None) -> int:
        criteria = criteria or {}
        if any(key not in _QUERYABLE for key in criteria):
            return len(await self.find_connections(criteria))
        stmt = select(func.count()).select_from(IntegrationConnection)
        for key, value in criteria.items():
            stmt = stmt.where(getattr(IntegrationConnection, key) == _plain(value))
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    # ── dedicated writes ────────────────────────────────────────────────

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
