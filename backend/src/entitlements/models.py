"""
Entitlement models: canonical types for the plan-based entitlement engine.

Provides:
- Feature / Metric: closed enumerations of feature flags and metered limits
- UNLIMITED: first-class "no ceiling" limit value
- FeatureSet / LimitSet: materialized entitlements of a plan or tenant
- Plan: immutable catalog entry
- TenantSubscription: immutable snapshot of a tenant's subscription row
- TenantEvent: immutable audit record

Feature and metric names are parsed into the enums at the edges (config,
API, callers holding strings). Inside the engine only enum members travel,
so an unknown name is a construction-time error, not a silent False.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from src.entitlements.errors import UnknownFeatureError, UnknownMetricError


# ---------------------------------------------------------------------------
# Canonical enums, import from here
# ---------------------------------------------------------------------------

class Feature(str, Enum):
    """Boolean capabilities a plan can switch on."""
    INVENTORY = "inventory"
    POS = "pos"
    INVOICING = "invoicing"
    EXPENSES = "expenses"
    REPORTS = "reports"
    MULTI_LOCATION = "multiLocation"
    ADVANCED_REPORTS = "advancedReports"
    API_ACCESS = "apiAccess"
    CUSTOM_BRANDING = "customBranding"
    PRIORITY_SUPPORT = "prioritySupport"
    DATA_EXPORT = "dataExport"

    @classmethod
    def parse(cls, name: Union[str, "Feature"]) -> "Feature":
        if isinstance(name, cls):
            return name
        try:
            return cls(name)
        except ValueError:
            raise UnknownFeatureError(str(name)) from None


class Metric(str, Enum):
    """Metered resources with a per-plan ceiling."""
    MAX_USERS = "maxUsers"
    MAX_PRODUCTS = "maxProducts"
    MAX_TRANSACTIONS = "maxTransactions"
    MAX_STORAGE = "maxStorage"  # MB
    MAX_API_CALLS = "maxApiCalls"  # per month
    MAX_LOCATIONS = "maxLocations"
    MAX_INTEGRATIONS = "maxIntegrations"

    @classmethod
    def parse(cls, name: Union[str, "Metric"]) -> "Metric":
        if isinstance(name, cls):
            return name
        try:
            return cls(name)
        except ValueError:
            raise UnknownMetricError(str(name)) from None


class Unlimited(Enum):
    """Limit value meaning the metric has no ceiling."""
    UNLIMITED = "unlimited"

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = Unlimited.UNLIMITED

LimitValue = Union[int, Unlimited]

# Reserved integration name granting every integration.
ALL_INTEGRATIONS = "all"


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def days(self) -> int:
        return {
            BillingCycle.MONTHLY: 30,
            BillingCycle.QUARTERLY: 90,
            BillingCycle.YEARLY: 365,
        }[self]


class TenantEventType(str, Enum):
    """Entitlement-affecting actions recorded in the tenant event log."""
    TENANT_CREATED = "tenant_created"
    TENANT_UPDATED = "tenant_updated"
    TENANT_SUSPENDED = "tenant_suspended"
    TENANT_ACTIVATED = "tenant_activated"
    PLAN_UPGRADED = "plan_upgraded"
    FEATURE_ENABLED = "feature_enabled"
    FEATURE_DISABLED = "feature_disabled"


class UsageLevel(str, Enum):
    """Severity bucket for a usage percentage."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Editable tenant settings. Nothing entitlement-relevant belongs here.
SETTINGS_FIELDS = frozenset({
    "timezone",
    "currency",
    "language",
    "date_format",
    "number_format",
})

DEFAULT_SETTINGS: Dict[str, str] = {
    "timezone": "America/Mexico_City",
    "currency": "MXN",
    "language": "es",
    "date_format": "DD/MM/YYYY",
    "number_format": "es-MX",
}


# ---------------------------------------------------------------------------
# Value objects (frozen dataclasses)
# ---------------------------------------------------------------------------

def _limit_at_least(higher: LimitValue, lower: LimitValue) -> bool:
    if higher is UNLIMITED:
        return True
    if lower is UNLIMITED:
        return False
    return higher >= lower


def serialize_limit(value: LimitValue) -> Union[int, str]:
    return UNLIMITED.value if value is UNLIMITED else value


def parse_limit(raw: Any) -> LimitValue:
    """Parse a config/storage limit value (non-negative int or "unlimited")."""
    if raw == UNLIMITED.value or raw is UNLIMITED:
        return UNLIMITED
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"limit must be a non-negative integer or 'unlimited', got {raw!r}")
    if raw < 0:
        raise ValueError(f"limit must be non-negative, got {raw}; use 'unlimited' for no ceiling")
    return raw


@dataclass(frozen=True)
class FeatureSet:
    """
    Feature flags plus the enabled integrations list.

    Immutable, safe to share between readers.
    """
    flags: Mapping[Feature, bool]
    integrations: Tuple[str, ...] = ()

    def is_enabled(self, feature: Feature) -> bool:
        return self.flags.get(feature) is True

    def enabled(self) -> List[Feature]:
        return [f for f in Feature if self.is_enabled(f)]

    def disabled(self) -> List[Feature]:
        return [f for f in Feature if not self.is_enabled(f)]

    def allows_integration(self, name: str) -> bool:
        return ALL_INTEGRATIONS in self.integrations or name in self.integrations

    def covers(self, other: "FeatureSet") -> bool:
        """True if every flag and integration of `other` is also granted here."""
        for feature in other.enabled():
            if not self.is_enabled(feature):
                return False
        if ALL_INTEGRATIONS in self.integrations:
            return True
        return set(other.integrations) <= set(self.integrations)

    def with_flag(self, feature: Feature, enabled: bool) -> "FeatureSet":
        flags = dict(self.flags)
        flags[feature] = enabled
        return FeatureSet(flags=flags, integrations=self.integrations)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {f.value: self.is_enabled(f) for f in Feature}
        data["integrations"] = list(self.integrations)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], strict: bool = False) -> "FeatureSet":
        """
        Build from a plain mapping.

        With strict=True (catalog load) every feature must be present and
        boolean; stored subscriptions may predate newer features, which then
        read as disabled.
        """
        flags: Dict[Feature, bool] = {}
        for key, value in data.items():
            if key == "integrations":
                continue
            feature = Feature.parse(key)
            if not isinstance(value, bool):
                raise ValueError(f"feature '{key}' must be a boolean, got {value!r}")
            flags[feature] = value
        if strict:
            missing = [f.value for f in Feature if f not in flags]
            if missing:
                raise ValueError(f"missing features: {', '.join(missing)}")
        integrations = data.get("integrations", [])
        if not isinstance(integrations, (list, tuple)):
            raise ValueError("integrations must be a list")
        return cls(flags=flags, integrations=tuple(str(i) for i in integrations))


@dataclass(frozen=True)
class LimitSet:
    """Ceiling per metric. A metric missing from the set has a ceiling of 0."""
    ceilings: Mapping[Metric, LimitValue]

    def get(self, metric: Metric) -> LimitValue:
        return self.ceilings.get(metric, 0)

    def is_unlimited(self, metric: Metric) -> bool:
        return self.get(metric) is UNLIMITED

    def covers(self, other: "LimitSet") -> bool:
        return all(_limit_at_least(self.get(m), other.get(m)) for m in Metric)

    def to_dict(self) -> Dict[str, Union[int, str]]:
        return {m.value: serialize_limit(self.get(m)) for m in Metric}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], strict: bool = False) -> "LimitSet":
        ceilings: Dict[Metric, LimitValue] = {}
        for key, value in data.items():
            ceilings[Metric.parse(key)] = parse_limit(value)
        if strict:
            missing = [m.value for m in Metric if m not in ceilings]
            if missing:
                raise ValueError(f"missing limits: {', '.join(missing)}")
        return cls(ceilings=ceilings)


@dataclass(frozen=True)
class Plan:
    """Immutable catalog entry. Higher rank means a bigger plan."""
    id: str
    rank: int
    name: str
    features: FeatureSet
    limits: LimitSet
    description: str = ""
    price: Decimal = Decimal("0")
    currency: str = "MXN"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    trial_days: int = 0
    is_popular: bool = False

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def has_trial(self) -> bool:
        return self.trial_days > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rank": self.rank,
            "name": self.name,
            "description": self.description,
            "price": str(self.price),
            "currency": self.currency,
            "billing_cycle": self.billing_cycle.value,
            "trial_days": self.trial_days,
            "is_popular": self.is_popular,
            "features": self.features.to_dict(),
            "limits": self.limits.to_dict(),
        }


@dataclass(frozen=True)
class TenantSubscription:
    """
    Snapshot of one tenant's subscription.

    Built from a single committed row, so features and limits always belong
    to the same plan assignment. Mutations go through the service/workflow
    and produce a new snapshot.
    """
    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    features: FeatureSet
    limits: LimitSet
    settings: Mapping[str, Any]
    billing_cycle: BillingCycle
    next_billing_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "features": self.features.to_dict(),
            "limits": self.limits.to_dict(),
            "settings": dict(self.settings),
            "billing_cycle": self.billing_cycle.value,
            "next_billing_date": (
                self.next_billing_date.isoformat() if self.next_billing_date else None
            ),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }


@dataclass(frozen=True)
class TenantEvent:
    """Immutable record of an entitlement-affecting action."""
    id: str
    tenant_id: str
    type: TenantEventType
    timestamp: datetime
    data: Mapping[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": self.type.value,
            "data": dict(self.data),
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
        }
