"""
TreeVault Database Base — SQLAlchemy declarative base and mixins.

Provides:
- Base: SQLAlchemy declarative base for all TreeVault models
- AuditMixin: created_at, updated_at
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all TreeVault models."""
    pass


class AuditMixin:
    """Adds created_at and updated_at columns."""
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
