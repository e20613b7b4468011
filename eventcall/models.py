"""SQLAlchemy models for the EventCall local cache."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class CachedDocument(Base):
    """JSON snapshots: application state and autosaved form input."""

    __tablename__ = "cached_documents"

    kind = Column(String(32), primary_key=True)
    key = Column(String(255), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class PendingRSVP(Base):
    """An RSVP every submission tier rejected, kept for a later retry."""

    __tablename__ = "pending_rsvps"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(255), nullable=False, index=True)
    email = Column(String(320), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)
