"""
Error taxonomy shared by the graph store, memory service and embedding stack.

Each error carries the HTTP status the API boundary maps it to and a short
machine-readable code.
"""

from typing import Any, Dict, Optional


class MemoryGraphError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidInput(MemoryGraphError):
    status_code = 400
    code = "invalid_input"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["field"] = self.field
        return payload


class NotFound(MemoryGraphError):
    status_code = 404
    code = "not_found"

    def __init__(self, kind: str, id: str, message: Optional[str] = None):
        super().__init__(message or f"{kind} not found: {id}")
        self.kind = kind
        self.id = id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"kind": self.kind, "id": self.id})
        return payload


class Unauthenticated(MemoryGraphError):
    status_code = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Missing tenant identity"):
        super().__init__(message)


class InvalidTenant(MemoryGraphError):
    status_code = 401
    code = "invalid_tenant"

    def __init__(self, message: str = "Tenant id must be a non-empty string"):
        super().__init__(message)


class TenantMismatch(MemoryGraphError):
    status_code = 403
    code = "tenant_mismatch"

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Active tenant '{actual}' does not match expected tenant '{expected}'")
        self.expected = expected
        self.actual = actual


class DimensionMismatch(MemoryGraphError):
    status_code = 500
    code = "dimension_mismatch"

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimensions differ: {left} != {right}")
        self.left = left
        self.right = right


class UpstreamUnavailable(MemoryGraphError):
    """Embedding function or vector store did not answer in time. Retryable."""

    status_code = 503
    code = "upstream_unavailable"
    retryable = True

    def __init__(self, upstream: str, message: str):
        super().__init__(f"{upstream}: {message}")
        self.upstream = upstream
