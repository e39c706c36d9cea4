"""
Database models for tenant subscriptions.

Tenant-scoped models inherit from TenantScopedMixin.
"""

from src.models.base import TimestampMixin, TenantScopedMixin
from src.models.tenant_subscription import TenantSubscriptionRecord

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "TenantSubscriptionRecord",
]
