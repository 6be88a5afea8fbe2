"""
Common mixins for multi-tenant models
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, JSON
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declared_attr

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantMixin:
    """Mixin for company-scoped models. Rows are filtered and stamped by app.common.tenancy."""

    @declared_attr
    def company_id(cls):
        return Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class BaseMixin(TenantMixin, TimestampMixin):
    """Combines tenant and timestamp functionality for most business models"""

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
