"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.types import TypeDecorator

from chatseal.storage import Base
from chatseal.utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    SQLite keeps no offset, so values are normalized to UTC on the way in
    and tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Tenant(Base):
    """
    One connected WhatsApp Business Account and its credentials.

    Table: tenants
    Natural key: waba_id (unique)
    """
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    phone_number = Column(String, nullable=True)
    phone_number_id = Column(String, nullable=True, index=True)
    waba_id = Column(String, nullable=False, unique=True)
    access_token = Column(Text, nullable=True)
    is_test = Column(Boolean, nullable=False, default=False)
    plan_type = Column(String, nullable=False, default="free")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Message(Base):
    """
    An inbound or outbound chat message.

    Table: messages
    wa_message_id is unique when present; it is the idempotency key for
    ingestion and the lookup key for delivery status callbacks.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_tenant_timestamp", "tenant_id", "timestamp"),
    )

    # seq keeps ordering deterministic for rows sharing a timestamp
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    from_address = Column(String, nullable=True)
    to_address = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    direction = Column(String(8), nullable=False)
    wa_message_id = Column(String, nullable=True, unique=True)
    wa_type = Column(String, nullable=True)
    profile_name = Column(String, nullable=True)
    status = Column(String(16), nullable=False, default="delivered")
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow)
    conversation = Column(JSON, nullable=True)
    pricing = Column(JSON, nullable=True)
    error = Column(JSON, nullable=True)
