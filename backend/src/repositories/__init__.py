"""
Repositories for data access.
"""

from src.repositories.subscription_repository import TenantSubscriptionRepository

__all__ = ["TenantSubscriptionRepository"]
