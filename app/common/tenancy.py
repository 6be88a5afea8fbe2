"""
Tenant context propagation and automatic company scoping for ORM calls.

The active company is kept in a ContextVar. While a context is set, every
ORM statement that touches a model using TenantMixin is limited to that
company:

- SELECT (get, first, all, count, aggregates), bulk UPDATE and bulk DELETE
  receive a ``company_id = :company`` criteria through with_loader_criteria.
- New objects are stamped with the context company on flush.
- Attempts to move an object to another company are reverted on flush.
- Flushing changes or deletes for objects of another company raises
  TenantIsolationError.

Without a context, statements pass through unchanged and a warning is logged
in development. ``without_tenant_isolation()`` marks system operations
(Stripe callbacks, background tasks) that intentionally work across tenants.
"""
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import event, inspect
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from app.common.mixins import TenantMixin
from app.core.config import settings

logger = logging.getLogger(__name__)


class TenantIsolationError(Exception):
    """Raised when a flush would modify rows that belong to another company."""


@dataclass(frozen=True)
class TenantContext:
    company_id: Optional[UUID]
    user_id: Optional[UUID] = None
    bypass: bool = False


_tenant_context: ContextVar[Optional[TenantContext]] = ContextVar("tenant_context", default=None)


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


@contextmanager
def run_in_tenant_context(company_id, user_id=None) -> Iterator[TenantContext]:
    """Run the enclosed block scoped to ``company_id``."""
    context = TenantContext(
        company_id=_as_uuid(company_id),
        user_id=_as_uuid(user_id) if user_id else None,
    )
    token = _tenant_context.set(context)
    try:
        yield context
    finally:
        _tenant_context.reset(token)


@contextmanager
def without_tenant_isolation() -> Iterator[None]:
    """Run the enclosed block with tenant scoping disabled. System operations only."""
    token = _tenant_context.set(TenantContext(company_id=None, bypass=True))
    try:
        yield
    finally:
        _tenant_context.reset(token)


def current_tenant_context() -> Optional[TenantContext]:
    return _tenant_context.get()


def get_tenant_context() -> TenantContext:
    context = _tenant_context.get()
    if context is None or context.bypass:
        raise RuntimeError(
            "Tenant context not set. Use run_in_tenant_context() first."
        )
    return context


def get_company_id() -> UUID:
    return get_tenant_context().company_id


def is_tenant_model(cls) -> bool:
    return isinstance(cls, type) and issubclass(cls, TenantMixin)


def _scoped_company_id() -> Optional[UUID]:
    context = _tenant_context.get()
    if context is None or context.bypass:
        return None
    return context.company_id


def _warn_missing_context(models, action: str) -> None:
    if settings.ENVIRONMENT != "development":
        return
    names = ", ".join(sorted(model.__name__ for model in models))
    logger.warning(f"[TENANT WARNING] {names}.{action} called without tenant context")


@event.listens_for(Session, "do_orm_execute")
def _scope_statement(execute_state: ORMExecuteState):
    if not (execute_state.is_select or execute_state.is_update or execute_state.is_delete):
        return
    if execute_state.is_column_load or execute_state.is_relationship_load:
        return

    context = _tenant_context.get()
    if context is None:
        tenant_models = [
            mapper.class_ for mapper in execute_state.all_mappers
            if is_tenant_model(mapper.class_)
        ]
        if tenant_models:
            if execute_state.is_select:
                action = "select"
            elif execute_state.is_update:
                action = "update"
            else:
                action = "delete"
            _warn_missing_context(tenant_models, action)
        return
    if context.bypass:
        return

    company_id = context.company_id
    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(
            TenantMixin,
            lambda cls: cls.company_id == company_id,
            include_aliases=True,
        )
    )


@event.listens_for(Session, "before_flush")
def _stamp_and_guard(session: Session, flush_context, instances):
    company_id = _scoped_company_id()
    context = _tenant_context.get()

    for obj in session.new:
        if not isinstance(obj, TenantMixin):
            continue
        if company_id is not None:
            obj.company_id = company_id
        elif context is None:
            _warn_missing_context([type(obj)], "create")

    if company_id is None:
        return

    for obj in session.dirty:
        if not isinstance(obj, TenantMixin):
            continue
        history = inspect(obj).attrs.company_id.history
        if history.deleted and history.added:
            logger.warning(
                f"Reverting company_id change on {type(obj).__name__} {getattr(obj, 'id', None)}"
            )
            obj.company_id = history.deleted[0]
        if obj.company_id != company_id:
            raise TenantIsolationError(
                f"{type(obj).__name__} {getattr(obj, 'id', None)} belongs to another company"
            )

    for obj in session.deleted:
        if isinstance(obj, TenantMixin) and obj.company_id != company_id:
            raise TenantIsolationError(
                f"{type(obj).__name__} {getattr(obj, 'id', None)} belongs to another company"
            )
