"""
Plan catalog: load subscription plans from config/plans.json.

Provides:
- PlanCatalog: ordered, validated, read-only list of plans
- get_plan_catalog(): process-wide catalog loaded once at start-up
- reset_plan_catalog(): drop the cached catalog (tests only)

CRITICAL: This is the source of truth for plan features and limits.
Do NOT hardcode feature access elsewhere.

The catalog refuses to load unless plans are totally ordered by rank and
every higher-rank plan offers at least the features and limits of every
lower-rank plan.
"""

import json
import os
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence

import yaml

from src.entitlements.errors import (
    CatalogConfigError,
    EntitlementError,
    PlanNotFoundError,
)
from src.entitlements.models import (
    BillingCycle,
    Feature,
    FeatureSet,
    LimitSet,
    Plan,
)

logger = logging.getLogger(__name__)

# Default config path relative to backend directory
DEFAULT_CONFIG_PATH = "config/plans.json"


class PlanCatalog:
    """
    Read-only plan catalog ordered by rank.

    Usage:
        catalog = PlanCatalog.from_file("config/plans.json")
        plan = catalog.find_by_id("professional")
        if plan.features.is_enabled(Feature.MULTI_LOCATION):
            ...
    """

    def __init__(self, plans: Sequence[Plan]):
        ordered = sorted(plans, key=lambda p: p.rank)
        _validate_plans(ordered)
        self._plans: List[Plan] = ordered
        self._by_id: Dict[str, Plan] = {p.id: p for p in ordered}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PlanCatalog":
        plans_data = raw.get("plans")
        if not isinstance(plans_data, list) or not plans_data:
            raise CatalogConfigError("catalog must define a non-empty 'plans' list")
        return cls([_parse_plan(p) for p in plans_data])

    @classmethod
    def from_file(cls, config_path: Optional[str] = None) -> "PlanCatalog":
        path = _resolve_config_path(config_path)
        logger.info(f"Loading plan catalog from {path}")

        with open(path, "r") as f:
            if path.suffix in (".yml", ".yaml"):
                raw = yaml.safe_load(f) or {}
            else:
                raw = json.load(f)

        catalog = cls.from_dict(raw)
        logger.info(
            "Loaded plan catalog",
            extra={"plan_count": len(catalog), "plans": [p.id for p in catalog.all_ordered_by_rank()]},
        )
        return catalog

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._by_id

    def find_by_id(self, plan_id: str) -> Plan:
        plan = self._by_id.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def rank_of(self, plan_id: str) -> int:
        return self.find_by_id(plan_id).rank

    def tenant_rank(self, plan_id: str) -> int:
        """
        Rank of the plan a tenant is currently on.

        A plan that has been removed from the catalog ranks below every
        listed plan, so any listed plan counts as an upgrade from it.
        """
        plan = self._by_id.get(plan_id)
        if plan is None:
            return self.lowest().rank - 1
        return plan.rank

    def all_ordered_by_rank(self) -> List[Plan]:
        return list(self._plans)

    def lowest(self) -> Plan:
        return self._plans[0]

    def highest(self) -> Plan:
        return self._plans[-1]

    def is_upgrade(self, from_plan_id: str, to_plan_id: str) -> bool:
        """Check if moving between the two plans would be an upgrade."""
        return self.rank_of(to_plan_id) > self.rank_of(from_plan_id)

    def features_gained(self, from_plan_id: str, to_plan_id: str) -> List[Feature]:
        """Features the target plan grants that the source plan does not."""
        source = self.find_by_id(from_plan_id)
        target = self.find_by_id(to_plan_id)
        return [
            f for f in target.features.enabled()
            if not source.features.is_enabled(f)
        ]


# ---------------------------------------------------------------------------
# Parsing and validation
# ---------------------------------------------------------------------------

def _resolve_config_path(config_path: Optional[str]) -> Path:
    """Resolve the catalog file path."""
    explicit = config_path or os.getenv("PLANS_CONFIG_PATH")
    if explicit:
        return Path(explicit)

    possible_paths = [
        Path(__file__).parent.parent.parent / DEFAULT_CONFIG_PATH,  # backend/config/
        Path(os.getcwd()) / DEFAULT_CONFIG_PATH,
        Path(os.getcwd()) / "backend" / DEFAULT_CONFIG_PATH,
    ]

    for path in possible_paths:
        if path.exists():
            return path

    raise FileNotFoundError(
        f"plans.json not found in any of: {[str(p) for p in possible_paths]}"
    )


def _parse_plan(plan_data: Dict[str, Any]) -> Plan:
    plan_id = plan_data.get("id")
    if not plan_id:
        raise CatalogConfigError("every plan needs an 'id'")

    rank = plan_data.get("rank")
    if isinstance(rank, bool) or not isinstance(rank, int):
        raise CatalogConfigError(f"plan '{plan_id}' needs an integer 'rank'", plan_id=plan_id)

    try:
        features = FeatureSet.from_dict(plan_data.get("features", {}), strict=True)
        limits = LimitSet.from_dict(plan_data.get("limits", {}), strict=True)
        price = Decimal(str(plan_data.get("price", 0)))
        billing_cycle = BillingCycle(plan_data.get("billing_cycle", BillingCycle.MONTHLY.value))
    except (ValueError, InvalidOperation, EntitlementError) as e:
        raise CatalogConfigError(f"plan '{plan_id}' is invalid: {e}", plan_id=plan_id) from e

    return Plan(
        id=plan_id,
        rank=rank,
        name=plan_data.get("name", plan_id),
        description=plan_data.get("description", ""),
        price=price,
        currency=plan_data.get("currency", "MXN"),
        billing_cycle=billing_cycle,
        trial_days=int(plan_data.get("trial_days", 0)),
        is_popular=bool(plan_data.get("is_popular", False)),
        features=features,
        limits=limits,
    )


def _validate_plans(ordered: List[Plan]) -> None:
    """Plans must be non-empty, uniquely identified and monotonic by rank."""
    if not ordered:
        raise CatalogConfigError("catalog must define at least one plan")

    ids = [p.id for p in ordered]
    duplicates = {i for i in ids if ids.count(i) > 1}
    if duplicates:
        raise CatalogConfigError(f"duplicate plan ids: {sorted(duplicates)}")

    ranks = [p.rank for p in ordered]
    if len(set(ranks)) != len(ranks):
        raise CatalogConfigError("plan ranks must be unique")

    # Checking adjacent pairs is enough: both relations are transitive.
    for lower, higher in zip(ordered, ordered[1:]):
        if not higher.features.covers(lower.features):
            raise CatalogConfigError(
                f"plan '{higher.id}' must offer every feature of lower-rank plan '{lower.id}'",
                plan_id=higher.id,
            )
        if not higher.limits.covers(lower.limits):
            raise CatalogConfigError(
                f"plan '{higher.id}' must offer limits >= lower-rank plan '{lower.id}'",
                plan_id=higher.id,
            )


# ---------------------------------------------------------------------------
# Process-wide catalog
# ---------------------------------------------------------------------------

_catalog: Optional[PlanCatalog] = None
_catalog_lock = Lock()


def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalog:
    """
    Get the process-wide PlanCatalog, loading it on first use.

    Args:
        config_path: Optional path to plans.json (only honoured on first load)
    """
    global _catalog
    if _catalog is None:
        with _catalog_lock:
            if _catalog is None:
                _catalog = PlanCatalog.from_file(config_path)
    return _catalog


def reset_plan_catalog() -> None:
    """
    Reset the cached catalog (for testing).

    WARNING: Only use in tests!
    """
    global _catalog
    with _catalog_lock:
        _catalog = None
