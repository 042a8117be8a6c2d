"""
SQLAlchemy ORM model for persisted integration connections.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"

    id = Column(String(32), primary_key=True)
    property_id = Column(String(64), nullable=False)
    integration_type = Column(String(64), nullable=False)
    name = Column(String(255))

    # Secret columns hold Fernet ciphertext when a key is configured
    oauth_access_token = Column(Text)
    oauth_refresh_token = Column(Text)
    oauth_expires_at = Column(DateTime(timezone=True))
    api_key = Column(Text)
    api_secret = Column(Text)

    config = Column(JsonType, default=dict)
    metadata_ = Column("metadata", JsonType, default=dict)
    status = Column(String(16), nullable=False, default="pending")

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_integration_connections_property", "property_id"),
        Index("ix_integration_connections_type", "integration_type"),
    )
