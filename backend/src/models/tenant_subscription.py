"""
TenantSubscription model: one row per tenant.

Features and limits are MATERIALIZED: copied from the plan when the plan is
assigned and never recomputed from the catalog. Editing config/plans.json
therefore never changes what an existing tenant already has.

The version column doubles as SQLAlchemy's version_id_col, so two writers
that loaded the same version cannot both commit.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Integer, DateTime, JSON, Index

from src.entitlements.models import (
    BillingCycle,
    FeatureSet,
    LimitSet,
    Plan,
    SubscriptionStatus,
    TenantSubscription,
)
from src.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid, ensure_utc


class TenantSubscriptionRecord(Base, TimestampMixin, TenantScopedMixin):
    """
    Persistent subscription state for a tenant.

    Never deleted while the tenant exists; cancellation sets status.
    """

    __tablename__ = "tenant_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)",
    )

    plan_id = Column(
        String(50),
        nullable=False,
        index=True,
        comment="Catalog plan id the features/limits were copied from",
    )

    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        comment="trial, active, suspended or cancelled",
    )

    features = Column(
        JSON,
        nullable=False,
        comment="Materialized feature flags + integrations list",
    )

    limits = Column(
        JSON,
        nullable=False,
        comment="Materialized metric ceilings ('unlimited' for no ceiling)",
    )

    settings = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="Timezone, currency and display settings (not entitlement-relevant)",
    )

    billing_cycle = Column(
        String(20),
        nullable=False,
        default=BillingCycle.MONTHLY.value,
    )

    next_billing_date = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Billing pointer; NULL for free plans",
    )

    version = Column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_tenant_subscriptions_plan_status", "plan_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantSubscriptionRecord("
            f"tenant_id={self.tenant_id}, "
            f"plan_id={self.plan_id}, "
            f"status={self.status}, "
            f"version={self.version}"
            f")>"
        )

    def apply_plan(self, plan: Plan, now: datetime) -> None:
        """
        Copy a plan's entitlements onto this row.

        plan_id, features and limits are assigned together and reach the
        database in one UPDATE.
        """
        self.plan_id = plan.id
        self.features = plan.features.to_dict()
        self.limits = plan.limits.to_dict()
        self.billing_cycle = plan.billing_cycle.value
        if plan.is_free:
            self.next_billing_date = None
        elif self.next_billing_date is None:
            self.next_billing_date = now + timedelta(days=plan.billing_cycle.days)
        self.updated_at = now

    def to_domain(self) -> TenantSubscription:
        """Convert to an immutable domain snapshot."""
        return TenantSubscription(
            tenant_id=self.tenant_id,
            plan_id=self.plan_id,
            status=SubscriptionStatus(self.status),
            features=FeatureSet.from_dict(self.features or {}),
            limits=LimitSet.from_dict(self.limits or {}),
            settings=dict(self.settings or {}),
            billing_cycle=BillingCycle(self.billing_cycle),
            next_billing_date=ensure_utc(self.next_billing_date),
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
            version=self.version,
        )

    @classmethod
    def for_plan(
        cls,
        tenant_id: str,
        plan: Plan,
        status: SubscriptionStatus,
        settings: Optional[Dict[str, Any]],
        now: datetime,
    ) -> "TenantSubscriptionRecord":
        record = cls(
            tenant_id=tenant_id,
            status=status.value,
            settings=dict(settings or {}),
            created_at=now,
        )
        record.apply_plan(plan, now)
        return record
