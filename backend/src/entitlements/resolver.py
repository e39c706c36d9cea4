"""
Entitlement resolution: pure functions over a subscription snapshot.

Answers "can this tenant do X" from the tenant's materialized features and
limits plus a usage count supplied by the caller. Nothing here touches
storage or mutates state.

Limit semantics:
- check_limit is strict: usage == ceiling already blocks the action.
- UNLIMITED never blocks; remaining() returns UNLIMITED and
  usage_percentage() returns 0.0 for it.
- A zero ceiling blocks everything and reports 0.0 percent.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.entitlements.loader import PlanCatalog
from src.entitlements.models import (
    UNLIMITED,
    Feature,
    LimitValue,
    Metric,
    TenantSubscription,
    UsageLevel,
)

# classify() breakpoints, checked highest first.
CRITICAL_THRESHOLD = 90.0
HIGH_THRESHOLD = 75.0
MEDIUM_THRESHOLD = 50.0

NEAR_LIMIT_THRESHOLD = 80.0


def _validate_usage(current_usage: int) -> int:
    if isinstance(current_usage, bool) or not isinstance(current_usage, int):
        raise ValueError(f"current_usage must be an integer, got {current_usage!r}")
    if current_usage < 0:
        raise ValueError(f"current_usage must be non-negative, got {current_usage}")
    return current_usage


def check_feature(subscription: TenantSubscription, feature: Feature) -> bool:
    """True if the feature is switched on for the tenant."""
    return subscription.features.is_enabled(feature)


def has_integration(subscription: TenantSubscription, integration: str) -> bool:
    return subscription.features.allows_integration(integration)


def limit_of(subscription: TenantSubscription, metric: Metric) -> LimitValue:
    return subscription.limits.get(metric)


def check_limit(subscription: TenantSubscription, metric: Metric, current_usage: int) -> bool:
    """True iff one more unit may be consumed: usage < ceiling."""
    usage = _validate_usage(current_usage)
    ceiling = limit_of(subscription, metric)
    if ceiling is UNLIMITED:
        return True
    return usage < ceiling


def remaining(subscription: TenantSubscription, metric: Metric, current_usage: int) -> LimitValue:
    """Units left before the ceiling, never negative; UNLIMITED passes through."""
    usage = _validate_usage(current_usage)
    ceiling = limit_of(subscription, metric)
    if ceiling is UNLIMITED:
        return UNLIMITED
    return max(0, ceiling - usage)


def usage_percentage(subscription: TenantSubscription, metric: Metric, current_usage: int) -> float:
    """Share of the ceiling in use, clamped to [0, 100]."""
    usage = _validate_usage(current_usage)
    ceiling = limit_of(subscription, metric)
    if ceiling is UNLIMITED or ceiling == 0:
        return 0.0
    return min(100.0, usage * 100 / ceiling)


def classify(percentage: float) -> UsageLevel:
    if percentage >= CRITICAL_THRESHOLD:
        return UsageLevel.CRITICAL
    if percentage >= HIGH_THRESHOLD:
        return UsageLevel.HIGH
    if percentage >= MEDIUM_THRESHOLD:
        return UsageLevel.MEDIUM
    return UsageLevel.LOW


def can_upgrade(subscription: TenantSubscription, catalog: PlanCatalog) -> bool:
    """True if some catalog plan ranks above the tenant's current plan."""
    return catalog.tenant_rank(subscription.plan_id) < catalog.highest().rank


@dataclass(frozen=True)
class LimitCheckResult:
    """Everything a limit gate needs to render or refuse an action."""
    metric: Metric
    can_perform: bool
    current: int
    max: LimitValue
    remaining: LimitValue
    percentage: float
    level: UsageLevel
    is_near_limit: bool
    is_at_limit: bool

    @property
    def unlimited(self) -> bool:
        return self.max is UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric.value,
            "can_perform": self.can_perform,
            "current": self.current,
            "max": None if self.unlimited else self.max,
            "remaining": None if self.remaining is UNLIMITED else self.remaining,
            "unlimited": self.unlimited,
            "percentage": self.percentage,
            "level": self.level.value,
            "is_near_limit": self.is_near_limit,
            "is_at_limit": self.is_at_limit,
        }


def limit_info(
    subscription: TenantSubscription,
    metric: Metric,
    current_usage: int,
    near_limit_threshold: float = NEAR_LIMIT_THRESHOLD,
) -> LimitCheckResult:
    """Full limit decision for one metric at one usage level."""
    percentage = usage_percentage(subscription, metric, current_usage)
    can_perform = check_limit(subscription, metric, current_usage)
    return LimitCheckResult(
        metric=metric,
        can_perform=can_perform,
        current=current_usage,
        max=limit_of(subscription, metric),
        remaining=remaining(subscription, metric, current_usage),
        percentage=percentage,
        level=classify(percentage),
        is_near_limit=percentage >= near_limit_threshold,
        is_at_limit=not can_perform,
    )


class EntitlementResolver:
    """
    Resolver bound to a plan catalog.

    The catalog is only needed for questions about other plans
    (can_upgrade, which plan unlocks a feature); everything else delegates
    to the module-level pure functions.
    """

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    check_feature = staticmethod(check_feature)
    check_limit = staticmethod(check_limit)
    remaining = staticmethod(remaining)
    usage_percentage = staticmethod(usage_percentage)
    classify = staticmethod(classify)
    limit_info = staticmethod(limit_info)
    has_integration = staticmethod(has_integration)

    def can_upgrade(self, subscription: TenantSubscription) -> bool:
        return can_upgrade(subscription, self.catalog)

    def required_plan_for(self, subscription: TenantSubscription, feature: Feature) -> Optional[str]:
        """
        Cheapest plan above the tenant's current plan that grants the feature.

        None when the tenant already has it or no higher plan offers it.
        """
        if check_feature(subscription, feature):
            return None
        current_rank = self.catalog.tenant_rank(subscription.plan_id)
        for plan in self.catalog.all_ordered_by_rank():
            if plan.rank > current_rank and plan.features.is_enabled(feature):
                return plan.id
        return None
