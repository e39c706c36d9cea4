"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from src.api.dependencies.entitlements import (
    TENANT_HEADER,
    get_entitlement_service,
    raise_http,
    require_feature,
)

__all__ = [
    "TENANT_HEADER",
    "get_entitlement_service",
    "raise_http",
    "require_feature",
]
