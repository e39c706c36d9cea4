"""
Upgrade workflow: the only writer of a tenant's plan-derived fields.

Provides:
- TenantLockRegistry: one lock per tenant id
- UpgradeWorkflow.upgrade(): move a tenant to a higher-rank plan
- UpgradeWorkflow.set_feature(): switch a single materialized feature

Guarantees:
- plan_id, features and limits change in one committed UPDATE; readers see
  the old plan or the new plan, never a mix.
- Validation happens before any write, so a failed call leaves the row
  untouched.
- Writes and event appends for one tenant are serialized on that tenant's
  lock; different tenants never wait on each other.
- Across processes the row version is checked on commit
  (ConcurrentModificationError if another writer got there first).

Downgrades are not handled here.
"""

import logging
from threading import Lock
from typing import Callable, Optional
from weakref import WeakValueDictionary

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.entitlements.audit import TenantEventLog
from src.entitlements.errors import (
    ConcurrentModificationError,
    InvalidUpgradeDirectionError,
    SubscriptionCancelledError,
)
from src.entitlements.loader import PlanCatalog
from src.entitlements.models import (
    Feature,
    SubscriptionStatus,
    TenantEventType,
    TenantSubscription,
)
from src.models.base import utcnow
from src.repositories.subscription_repository import TenantSubscriptionRepository

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def commit_subscription(session: Session, tenant_id: str) -> None:
    """Commit a subscription write, mapping a lost version check to a domain error."""
    try:
        session.commit()
    except StaleDataError as e:
        session.rollback()
        logger.warning("Subscription version conflict", extra={"tenant_id": tenant_id})
        raise ConcurrentModificationError(tenant_id) from e


class TenantLockRegistry:
    """
    Hands out one lock per tenant id.

    Locks are held weakly: a lock lives while some thread holds it or waits
    on it, and is dropped once nothing references it. Two callers asking
    for the same tenant while either still holds the lock get the same
    object.
    """

    def __init__(self):
        self._locks: "WeakValueDictionary[str, Lock]" = WeakValueDictionary()
        self._registry_lock = Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def get_lock(self, tenant_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = Lock()
                self._locks[tenant_id] = lock
            return lock


class UpgradeWorkflow:
    """
    Orchestrates plan transitions for tenants.

    Usage:
        workflow = UpgradeWorkflow(session_factory, catalog, event_log, locks)
        subscription = workflow.upgrade("tenant-demo", "professional")
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        catalog: PlanCatalog,
        event_log: TenantEventLog,
        locks: Optional[TenantLockRegistry] = None,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._event_log = event_log
        self._locks = locks or TenantLockRegistry()

    def upgrade(
        self,
        tenant_id: str,
        target_plan_id: str,
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        """
        Move a tenant to a strictly higher-rank plan.

        Raises:
            PlanNotFoundError: target plan is not in the catalog
            TenantNotFoundError: tenant has no subscription
            SubscriptionCancelledError: subscription is cancelled
            InvalidUpgradeDirectionError: target rank <= current rank
            ConcurrentModificationError: another process committed first
        """
        target = self._catalog.find_by_id(target_plan_id)

        with self._locks.get_lock(tenant_id):
            with self._session_factory() as session:
                repo = TenantSubscriptionRepository(session)
                record = repo.get(tenant_id)

                if record.status == SubscriptionStatus.CANCELLED.value:
                    raise SubscriptionCancelledError(tenant_id)

                previous_plan = record.plan_id
                previous_features = record.to_domain().features
                if target.rank <= self._catalog.tenant_rank(previous_plan):
                    logger.warning("Rejected plan change that is not an upgrade", extra={
                        "tenant_id": tenant_id,
                        "current_plan": previous_plan,
                        "target_plan": target.id,
                    })
                    raise InvalidUpgradeDirectionError(tenant_id, previous_plan, target.id)

                record.apply_plan(target, utcnow())
                commit_subscription(session, tenant_id)
                updated = record.to_domain()

            self._event_log.append(
                tenant_id,
                TenantEventType.PLAN_UPGRADED,
                {
                    "previousPlan": previous_plan,
                    "newPlan": target.id,
                    "featuresGained": [
                        f.value for f in target.features.enabled()
                        if not previous_features.is_enabled(f)
                    ],
                },
                actor_id=actor_id,
            )

        logger.info("Tenant plan upgraded", extra={
            "tenant_id": tenant_id,
            "previous_plan": previous_plan,
            "new_plan": target.id,
            "version": updated.version,
        })
        return updated

    def set_feature(
        self,
        tenant_id: str,
        feature: Feature,
        enabled: bool,
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        """
        Switch one materialized feature on or off for a tenant.

        Plan and limits are untouched. Setting a feature to the value it
        already has writes nothing and records no event. The next upgrade
        replaces the whole feature set with the target plan's.
        """
        with self._locks.get_lock(tenant_id):
            with self._session_factory() as session:
                repo = TenantSubscriptionRepository(session)
                record = repo.get(tenant_id)

                if record.status == SubscriptionStatus.CANCELLED.value:
                    raise SubscriptionCancelledError(tenant_id)

                current = record.to_domain()
                if current.features.is_enabled(feature) == enabled:
                    return current

                record.features = current.features.with_flag(feature, enabled).to_dict()
                record.updated_at = utcnow()
                commit_subscription(session, tenant_id)
                updated = record.to_domain()

            event_type = TenantEventType.FEATURE_ENABLED if enabled else TenantEventType.FEATURE_DISABLED
            self._event_log.append(
                tenant_id, event_type, {"feature": feature.value}, actor_id=actor_id
            )

        logger.info("Tenant feature toggled", extra={
            "tenant_id": tenant_id,
            "feature": feature.value,
            "enabled": enabled,
        })
        return updated
