from typing import Callable, Optional, TypeVar

from fastapi import Request
from fastapi.concurrency import run_in_threadpool

from config import settings
from errors import Unauthenticated
from tenancy.context import TenantScope, validate_tenant, with_tenant

T = TypeVar("T")


def get_tenant_id(request: Request) -> str:
    """Resolve the caller's tenant from the configured header."""
    tenant_id: Optional[str] = request.headers.get(settings.TENANT_HEADER)
    if tenant_id is None or not tenant_id.strip():
        raise Unauthenticated(f"Missing {settings.TENANT_HEADER} header")
    return tenant_id.strip()


async def run_for_tenant(request: Request, tenant_id: str, fn: Callable[[TenantScope], T]) -> T:
    """
    Run blocking graph work for one tenant in the threadpool.

    The whole call (scope open, fn, commit) happens on a single worker thread,
    so the scope's connection and context marker never cross threads.
    """
    session_factory = getattr(request.app.state, "session_factory", None)

    def _guarded(scope: TenantScope) -> T:
        validate_tenant(tenant_id)
        return fn(scope)

    return await run_in_threadpool(with_tenant, tenant_id, _guarded, session_factory)
