"""
Subscription entitlement engine for multi-tenant plan gating.

This package provides:
- PlanCatalog: Ordered, validated plans loaded from config/plans.json
- Feature / Metric: Closed enumerations of gated features and usage limits
- TenantSubscription: Frozen snapshot of a tenant's plan and materialized entitlements
- Resolver functions: check_feature, check_limit, remaining, usage_percentage, classify
- UsageReporter: Latest usage counts pushed by business stores
- TenantEventLog: Bounded, most-recent-first tenant event history

EntitlementService (src.entitlements.service) and UpgradeWorkflow
(src.entitlements.workflow) depend on the SQLAlchemy models and are imported
from their modules directly.
"""

from src.entitlements.errors import (
    EntitlementError,
    CatalogConfigError,
    PlanNotFoundError,
    TenantNotFoundError,
    TenantAlreadyExistsError,
    InvalidUpgradeDirectionError,
    SubscriptionCancelledError,
    ConcurrentModificationError,
    UnknownFeatureError,
    UnknownMetricError,
    InvalidSettingsError,
    EntitlementDeniedError,
)
from src.entitlements.models import (
    UNLIMITED,
    Feature,
    Metric,
    FeatureSet,
    LimitSet,
    Plan,
    SubscriptionStatus,
    TenantSubscription,
    TenantEvent,
    TenantEventType,
    UsageLevel,
)
from src.entitlements.loader import PlanCatalog, get_plan_catalog, reset_plan_catalog
from src.entitlements.resolver import (
    EntitlementResolver,
    LimitCheckResult,
    check_feature,
    check_limit,
    classify,
    remaining,
    usage_percentage,
)
from src.entitlements.usage import UsageReporter, UsageSnapshot
from src.entitlements.audit import TenantEventLog

__all__ = [
    # Errors
    "EntitlementError",
    "CatalogConfigError",
    "PlanNotFoundError",
    "TenantNotFoundError",
    "TenantAlreadyExistsError",
    "InvalidUpgradeDirectionError",
    "SubscriptionCancelledError",
    "ConcurrentModificationError",
    "UnknownFeatureError",
    "UnknownMetricError",
    "InvalidSettingsError",
    "EntitlementDeniedError",
    # Types
    "UNLIMITED",
    "Feature",
    "Metric",
    "FeatureSet",
    "LimitSet",
    "Plan",
    "SubscriptionStatus",
    "TenantSubscription",
    "TenantEvent",
    "TenantEventType",
    "UsageLevel",
    # Catalog
    "PlanCatalog",
    "get_plan_catalog",
    "reset_plan_catalog",
    # Resolver
    "EntitlementResolver",
    "LimitCheckResult",
    "check_feature",
    "check_limit",
    "classify",
    "remaining",
    "usage_percentage",
    # Usage and events
    "UsageReporter",
    "UsageSnapshot",
    "TenantEventLog",
]
