"""
Entitlement Service: single entry point for all entitlement operations.

Provides:
- Tenant lifecycle: create_tenant / get_subscription / update_settings /
  change_status / cancel
- Decisions: check_feature / check_limit / usage_summary / can_upgrade
- Plan changes: upgrade / set_feature (delegated to UpgradeWorkflow)
- Events: list_events
- TenantSession: per-caller "current tenant" selection

Architecture:
- The service owns its collaborators (catalog, event log, usage reporter,
  lock registry). There is no module-level tenant store; build one service
  per process (or per test) and pass it around.
- Reads open a short session, convert the row to a frozen snapshot and
  close. Decisions are computed on the snapshot with the pure resolver.
- Every write for a tenant runs under that tenant's lock.

CRITICAL: This is the ONLY module routes and other callers should use.
Do NOT write TenantSubscriptionRecord rows directly.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError

from src.entitlements.audit import TenantEventLog
from src.entitlements.errors import (
    InvalidSettingsError,
    SubscriptionCancelledError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
)
from src.entitlements.loader import PlanCatalog, get_plan_catalog
from src.entitlements.models import (
    DEFAULT_SETTINGS,
    SETTINGS_FIELDS,
    Feature,
    Metric,
    Plan,
    SubscriptionStatus,
    TenantEvent,
    TenantEventType,
    TenantSubscription,
)
from src.entitlements.resolver import EntitlementResolver, LimitCheckResult
from src.entitlements.usage import UsageReporter, UsageSnapshot
from src.entitlements.workflow import (
    SessionFactory,
    TenantLockRegistry,
    UpgradeWorkflow,
    commit_subscription,
)
from src.models.base import utcnow
from src.models.tenant_subscription import TenantSubscriptionRecord
from src.repositories.subscription_repository import TenantSubscriptionRepository

logger = logging.getLogger(__name__)


_STATUS_EVENTS = {
    SubscriptionStatus.SUSPENDED: TenantEventType.TENANT_SUSPENDED,
    SubscriptionStatus.ACTIVE: TenantEventType.TENANT_ACTIVATED,
}


class EntitlementService:
    """
    Central entitlement service.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session
        catalog: Plan catalog (defaults to the process-wide catalog)
        event_log: Tenant event log (defaults to a fresh 100-event log)
        usage_reporter: Latest usage counts from business stores
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        catalog: Optional[PlanCatalog] = None,
        event_log: Optional[TenantEventLog] = None,
        usage_reporter: Optional[UsageReporter] = None,
    ):
        self._session_factory = session_factory
        self.catalog = catalog or get_plan_catalog()
        self.event_log = event_log or TenantEventLog()
        self.usage = usage_reporter or UsageReporter()
        self.resolver = EntitlementResolver(self.catalog)
        self._locks = TenantLockRegistry()
        self._workflow = UpgradeWorkflow(
            session_factory, self.catalog, self.event_log, self._locks
        )

    # ------------------------------------------------------------------
    # Tenant lifecycle
    # ------------------------------------------------------------------

    def create_tenant(
        self,
        tenant_id: str,
        initial_plan_id: str = "free",
        status: Optional[SubscriptionStatus] = None,
        settings: Optional[Mapping[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        """
        Subscribe a new tenant to a plan.

        Status defaults to trial when the plan offers trial days, else active.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")
        plan = self.catalog.find_by_id(initial_plan_id)
        if status is None:
            status = SubscriptionStatus.TRIAL if plan.has_trial else SubscriptionStatus.ACTIVE

        merged_settings = dict(DEFAULT_SETTINGS)
        if settings:
            merged_settings.update(self._validate_settings(settings))

        with self._locks.get_lock(tenant_id):
            with self._session_factory() as session:
                repo = TenantSubscriptionRepository(session)
                if repo.exists(tenant_id):
                    raise TenantAlreadyExistsError(tenant_id)
                record = TenantSubscriptionRecord.for_plan(
                    tenant_id, plan, status, merged_settings, utcnow()
                )
                try:
                    repo.add(record)
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    raise TenantAlreadyExistsError(tenant_id) from e
                created = record.to_domain()

            self.event_log.append(
                tenant_id,
                TenantEventType.TENANT_CREATED,
                {"plan": plan.id, "status": status.value},
                actor_id=actor_id,
            )
        return created

    def get_subscription(self, tenant_id: str) -> TenantSubscription:
        """
        Raises:
            TenantNotFoundError: If the tenant has no subscription
        """
        with self._session_factory() as session:
            return TenantSubscriptionRepository(session).get_snapshot(tenant_id)

    def list_tenants(self, status: Optional[SubscriptionStatus] = None) -> List[str]:
        with self._session_factory() as session:
            return TenantSubscriptionRepository(session).list_tenant_ids(status)

    def update_settings(
        self,
        tenant_id: str,
        partial_settings: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        """
        Merge non-entitlement settings (timezone, currency, ...).

        Raises:
            InvalidSettingsError: If any key is not an editable setting
        """
        changes = self._validate_settings(partial_settings)

        with self._locks.get_lock(tenant_id):
            with self._session_factory() as session:
                record = TenantSubscriptionRepository(session).get(tenant_id)
                merged = dict(record.settings or {})
                merged.update(changes)
                record.settings = merged
                record.updated_at = utcnow()
                commit_subscription(session, tenant_id)
                updated = record.to_domain()

            self.event_log.append(
                tenant_id, TenantEventType.TENANT_UPDATED, {"settings": changes}, actor_id=actor_id
            )
        return updated

    def change_status(
        self,
        tenant_id: str,
        status: SubscriptionStatus,
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        """
        Move a subscription between trial, active, suspended and cancelled.

        Cancelled is terminal.
        """
        with self._locks.get_lock(tenant_id):
            with self._session_factory() as session:
                record = TenantSubscriptionRepository(session).get(tenant_id)
                previous = SubscriptionStatus(record.status)
                if previous == SubscriptionStatus.CANCELLED:
                    raise SubscriptionCancelledError(tenant_id)
                if previous == status:
                    return record.to_domain()

                record.status = status.value
                record.updated_at = utcnow()
                commit_subscription(session, tenant_id)
                updated = record.to_domain()

            self.event_log.append(
                tenant_id,
                _STATUS_EVENTS.get(status, TenantEventType.TENANT_UPDATED),
                {"previousStatus": previous.value, "status": status.value},
                actor_id=actor_id,
            )

        logger.info("Tenant status changed", extra={
            "tenant_id": tenant_id,
            "previous_status": previous.value,
            "status": status.value,
        })
        return updated

    def cancel(self, tenant_id: str, actor_id: Optional[str] = None) -> TenantSubscription:
        return self.change_status(tenant_id, SubscriptionStatus.CANCELLED, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def check_feature(self, tenant_id: str, feature: Union[str, Feature]) -> bool:
        feature = Feature.parse(feature)
        return self.resolver.check_feature(self.get_subscription(tenant_id), feature)

    def check_limit(
        self,
        tenant_id: str,
        metric: Union[str, Metric],
        current_usage: Optional[int] = None,
    ) -> LimitCheckResult:
        """
        Limit decision for one metric.

        When current_usage is omitted, the latest figure reported through
        the UsageReporter is used (0 if none was reported).
        """
        metric = Metric.parse(metric)
        subscription = self.get_subscription(tenant_id)
        if current_usage is None:
            current_usage = self.usage.current(tenant_id, metric)
        result = self.resolver.limit_info(subscription, metric, current_usage)
        if not result.can_perform:
            logger.info("Usage limit reached", extra={
                "tenant_id": tenant_id,
                "plan_id": subscription.plan_id,
                "metric": metric.value,
                "current": current_usage,
            })
        return result

    def check_integration(self, tenant_id: str, integration: str) -> bool:
        return self.resolver.has_integration(self.get_subscription(tenant_id), integration)

    def report_usage(self, tenant_id: str, counts: Mapping[Union[str, Metric], int]) -> UsageSnapshot:
        """
        Store a tenant's current usage totals.

        Raises:
            TenantNotFoundError: If the tenant has no subscription
            UnknownMetricError: If a key is not a known metric
            ValueError: If a count is negative or not an integer
        """
        self.get_subscription(tenant_id)
        return self.usage.report_many(tenant_id, counts)

    def usage_summary(self, tenant_id: str) -> Tuple[TenantSubscription, List[LimitCheckResult]]:
        """
        Limit decisions for every metric at the latest reported usage.

        Returns the subscription snapshot together with the results computed
        from it, so plan id and limits always belong to the same read.
        """
        subscription = self.get_subscription(tenant_id)
        snapshot = self.usage.snapshot(tenant_id)
        results = [
            self.resolver.limit_info(subscription, m, snapshot.get(m))
            for m in Metric
        ]
        return subscription, results

    def can_upgrade(self, tenant_id: str) -> bool:
        return self.resolver.can_upgrade(self.get_subscription(tenant_id))

    def required_plan_for(self, tenant_id: str, feature: Union[str, Feature]) -> Optional[str]:
        feature = Feature.parse(feature)
        return self.resolver.required_plan_for(self.get_subscription(tenant_id), feature)

    def available_plans(self) -> List[Plan]:
        return self.catalog.all_ordered_by_rank()

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def upgrade(
        self,
        tenant_id: str,
        target_plan_id: str,
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        return self._workflow.upgrade(tenant_id, target_plan_id, actor_id=actor_id)

    def set_feature(
        self,
        tenant_id: str,
        feature: Union[str, Feature],
        enabled: bool,
        actor_id: Optional[str] = None,
    ) -> TenantSubscription:
        return self._workflow.set_feature(
            tenant_id, Feature.parse(feature), enabled, actor_id=actor_id
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def list_events(self, tenant_id: str, limit: Optional[int] = None) -> List[TenantEvent]:
        """
        Raises:
            TenantNotFoundError: If the tenant has no subscription
        """
        self.get_subscription(tenant_id)
        return self.event_log.events_for(tenant_id, limit=limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_settings(settings: Mapping[str, Any]) -> Dict[str, Any]:
        invalid = set(settings) - SETTINGS_FIELDS
        if invalid:
            raise InvalidSettingsError(invalid)
        return dict(settings)


class TenantSession:
    """
    Which tenant a caller is currently working in.

    Switching only changes the selection; the subscription is not touched.
    """

    def __init__(self, service: EntitlementService, tenant_id: Optional[str] = None):
        self._service = service
        self._active_tenant_id: Optional[str] = None
        if tenant_id is not None:
            self.switch_active(tenant_id)

    @property
    def active_tenant_id(self) -> Optional[str]:
        return self._active_tenant_id

    def switch_active(self, tenant_id: str) -> TenantSubscription:
        """
        Raises:
            TenantNotFoundError: If the tenant has no subscription
        """
        subscription = self._service.get_subscription(tenant_id)
        self._active_tenant_id = tenant_id
        return subscription

    def current(self) -> TenantSubscription:
        if self._active_tenant_id is None:
            raise TenantNotFoundError("<none selected>")
        return self._service.get_subscription(self._active_tenant_id)
