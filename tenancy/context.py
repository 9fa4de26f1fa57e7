"""
Tenant Context Guard

Every graph read and write runs inside a tenant scope: one session, one pooled
connection, one transaction, branded with the tenant id for its whole lifetime.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from errors import InvalidTenant, TenantMismatch

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_TENANT = "none"

# Diagnostic only. The scope object is what carries the tenant into queries.
_current_tenant: ContextVar[Optional[str]] = ContextVar("current_tenant", default=None)


@dataclass(frozen=True)
class TenantScope:
    """Active tenant plus the session bound to its transaction."""
    tenant_id: str
    session: Session


def _normalize_tenant(tenant_id) -> str:
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise InvalidTenant()
    return tenant_id.strip()


def _bind_tenant(session: Session, tenant_id: str) -> None:
    """Brand the current transaction for row-level security policies."""
    if session.get_bind().dialect.name == "postgresql":
        # is_local=true: cleared at COMMIT/ROLLBACK, so the pooled connection is clean
        session.execute(
            text("SELECT set_config('app.current_tenant_id', :tenant_id, true)"),
            {"tenant_id": tenant_id},
        )


@contextmanager
def tenant_scope(tenant_id: str, session_factory: Optional[sessionmaker] = None) -> Iterator[TenantScope]:
    """
    Open a tenant-bound transaction.

    Commits on normal exit, rolls back on exception, always releases the
    connection and clears the diagnostic marker.

    Raises:
        InvalidTenant: tenant_id is missing or blank
    """
    tenant_id = _normalize_tenant(tenant_id)
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    session = session_factory()
    token = _current_tenant.set(tenant_id)
    try:
        with session.begin():
            _bind_tenant(session, tenant_id)
            yield TenantScope(tenant_id=tenant_id, session=session)
    finally:
        _current_tenant.reset(token)
        session.close()


def with_tenant(tenant_id: str, fn: Callable[[TenantScope], T], session_factory: Optional[sessionmaker] = None) -> T:
    """Run fn inside a tenant scope and return its result."""
    with tenant_scope(tenant_id, session_factory) as scope:
        return fn(scope)


def current_tenant() -> str:
    return _current_tenant.get() or NO_TENANT


def validate_tenant(expected: str) -> None:
    actual = current_tenant()
    if actual != expected:
        logger.warning(f"Tenant mismatch: expected={expected} active={actual}")
        raise TenantMismatch(expected=expected, actual=actual)
