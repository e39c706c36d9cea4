"""
Tests for the upgrade workflow.

Tests cover:
- Upgrades replace plan, features and limits together
- Downgrades and same-plan requests are refused and change nothing
- Feature toggles
- Per-tenant serialization and the optimistic version check
"""

import gc
import threading
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.database.session import create_tables
from src.entitlements.errors import (
    ConcurrentModificationError,
    InvalidUpgradeDirectionError,
    PlanNotFoundError,
    SubscriptionCancelledError,
    TenantNotFoundError,
)
from src.entitlements.loader import PlanCatalog
from src.entitlements.models import Feature, Metric, SubscriptionStatus, TenantEventType
from src.entitlements.service import EntitlementService
from src.entitlements.workflow import TenantLockRegistry, commit_subscription
from src.models.base import utcnow
from src.repositories.subscription_repository import TenantSubscriptionRepository


@pytest.fixture
def file_session_factory(tmp_path):
    """
    Session factory on a file-backed SQLite database.

    Each session gets its own connection, which the in-memory StaticPool
    fixture cannot offer.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'entitlements.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_tables(engine)
    yield sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


# =============================================================================
# Upgrade Tests
# =============================================================================

class TestUpgrade:
    """Test suite for UpgradeWorkflow.upgrade via the service."""

    def test_starter_to_professional(self, service, catalog):
        """Test that an upgrade swaps features and limits and records the event."""
        service.create_tenant("tenant-demo", "starter")
        assert service.check_feature("tenant-demo", Feature.MULTI_LOCATION) is False

        upgraded = service.upgrade("tenant-demo", "professional", actor_id="user-1")

        assert upgraded.plan_id == "professional"
        assert service.check_feature("tenant-demo", Feature.MULTI_LOCATION) is True
        assert upgraded.limits == catalog.find_by_id("professional").limits
        assert upgraded.features == catalog.find_by_id("professional").features

        latest = service.list_events("tenant-demo")[0]
        assert latest.type == TenantEventType.PLAN_UPGRADED
        assert latest.data["previousPlan"] == "starter"
        assert latest.data["newPlan"] == "professional"
        assert "multiLocation" in latest.data["featuresGained"]
        assert latest.actor_id == "user-1"

    def test_upgrade_is_persisted(self, service):
        """Test that a fresh read sees the upgraded plan and a bumped version."""
        created = service.create_tenant("tenant-1", "free")

        service.upgrade("tenant-1", "enterprise")
        stored = service.get_subscription("tenant-1")

        assert stored.plan_id == "enterprise"
        assert stored.limits.is_unlimited(Metric.MAX_INTEGRATIONS)
        assert stored.version == created.version + 1

    def test_upgrade_from_free_sets_billing_date(self, service):
        created = service.create_tenant("tenant-1", "free")
        assert created.next_billing_date is None

        before = utcnow()
        upgraded = service.upgrade("tenant-1", "starter")

        assert upgraded.next_billing_date is not None
        assert upgraded.next_billing_date >= before + timedelta(days=30)

    def test_starter_to_free_refused(self, service):
        """Test that a downgrade fails and leaves the subscription unchanged."""
        before = service.create_tenant("tenant-demo", "starter")

        with pytest.raises(InvalidUpgradeDirectionError) as exc_info:
            service.upgrade("tenant-demo", "free")

        after = service.get_subscription("tenant-demo")
        assert exc_info.value.to_dict()["current_plan"] == "starter"
        assert exc_info.value.http_status == 409
        assert after == before
        assert [e.type for e in service.list_events("tenant-demo")] == [
            TenantEventType.TENANT_CREATED
        ]

    def test_same_plan_refused(self, service):
        service.create_tenant("tenant-1", "professional")

        with pytest.raises(InvalidUpgradeDirectionError):
            service.upgrade("tenant-1", "professional")

    def test_unknown_plan(self, service):
        service.create_tenant("tenant-1", "free")

        with pytest.raises(PlanNotFoundError):
            service.upgrade("tenant-1", "platinum")

        assert service.get_subscription("tenant-1").plan_id == "free"

    def test_unknown_tenant(self, service):
        with pytest.raises(TenantNotFoundError):
            service.upgrade("ghost", "starter")

    def test_cancelled_subscription_refused(self, service):
        service.create_tenant("tenant-1", "free")
        service.cancel("tenant-1")

        with pytest.raises(SubscriptionCancelledError):
            service.upgrade("tenant-1", "starter")

        assert service.get_subscription("tenant-1").plan_id == "free"

    def test_upgrade_from_retired_plan(self, session_factory, service, plans_config):
        """Test that a tenant on a plan removed from the catalog can move to any listed plan."""
        service.create_tenant("legacy", "starter")
        plans_config["plans"] = [p for p in plans_config["plans"] if p["id"] != "starter"]
        trimmed = EntitlementService(session_factory, catalog=PlanCatalog.from_dict(plans_config))

        assert trimmed.can_upgrade("legacy") is True
        assert trimmed.required_plan_for("legacy", Feature.MULTI_LOCATION) == "professional"

        upgraded = trimmed.upgrade("legacy", "free")

        assert upgraded.plan_id == "free"
        event = trimmed.list_events("legacy")[0]
        assert event.data["previousPlan"] == "starter"
        assert event.data["featuresGained"] == []

    def test_features_gained_reflects_toggles(self, service):
        """Test that featuresGained lists only features the tenant did not already have."""
        service.create_tenant("tenant-1", "starter")
        service.set_feature("tenant-1", Feature.MULTI_LOCATION, True)

        service.upgrade("tenant-1", "professional")

        gained = service.list_events("tenant-1")[0].data["featuresGained"]
        assert "multiLocation" not in gained
        assert "advancedReports" in gained

    def test_upgrade_replaces_manual_toggles(self, service):
        """Test that an upgrade resets features to the target plan's set."""
        service.create_tenant("tenant-1", "free")
        service.set_feature("tenant-1", Feature.ADVANCED_REPORTS, True)

        service.upgrade("tenant-1", "starter")

        assert service.check_feature("tenant-1", Feature.ADVANCED_REPORTS) is False


# =============================================================================
# Feature Toggle Tests
# =============================================================================

class TestSetFeature:
    """Test suite for UpgradeWorkflow.set_feature."""

    def test_enable_and_disable(self, service):
        service.create_tenant("tenant-1", "starter")

        service.set_feature("tenant-1", "apiAccess", True, actor_id="admin")
        assert service.check_feature("tenant-1", Feature.API_ACCESS) is True

        service.set_feature("tenant-1", Feature.API_ACCESS, False)
        assert service.check_feature("tenant-1", Feature.API_ACCESS) is False

        types = [e.type for e in service.list_events("tenant-1")]
        assert types[:2] == [TenantEventType.FEATURE_DISABLED, TenantEventType.FEATURE_ENABLED]

    def test_toggle_leaves_plan_and_limits(self, service):
        before = service.create_tenant("tenant-1", "starter")

        after = service.set_feature("tenant-1", Feature.MULTI_LOCATION, True)

        assert after.plan_id == "starter"
        assert after.limits == before.limits

    def test_noop_toggle_records_nothing(self, service):
        """Test that setting a feature to its current value writes nothing."""
        before = service.create_tenant("tenant-1", "starter")

        after = service.set_feature("tenant-1", Feature.INVOICING, True)

        assert after.version == before.version
        assert len(service.list_events("tenant-1")) == 1

    def test_cancelled_subscription_refused(self, service):
        service.create_tenant("tenant-1", "starter")
        service.cancel("tenant-1")

        with pytest.raises(SubscriptionCancelledError):
            service.set_feature("tenant-1", Feature.API_ACCESS, True)


# =============================================================================
# Concurrency Tests
# =============================================================================

class TestConcurrency:
    """Test suite for per-tenant serialization."""

    def test_lock_registry_returns_one_lock_per_tenant(self):
        locks = TenantLockRegistry()

        lock_a = locks.get_lock("a")
        lock_b = locks.get_lock("b")

        assert locks.get_lock("a") is lock_a
        assert lock_a is not lock_b
        assert len(locks) == 2

    def test_lock_registry_drops_unused_locks(self):
        locks = TenantLockRegistry()
        lock = locks.get_lock("a")

        del lock
        gc.collect()

        assert len(locks) == 0

    def test_unknown_tenants_leave_no_locks_behind(self, service):
        """Test that calls for tenants that do not exist do not grow the lock registry."""
        for i in range(200):
            with pytest.raises(TenantNotFoundError):
                service.upgrade(f"ghost-{i}", "starter")
            with pytest.raises(TenantNotFoundError):
                service.set_feature(f"ghost-{i}", Feature.API_ACCESS, True)
            with pytest.raises(TenantNotFoundError):
                service.change_status(f"ghost-{i}", SubscriptionStatus.SUSPENDED)
        gc.collect()

        assert len(service._locks) == 0

    @pytest.mark.slow
    def test_racing_upgrades_never_mix_plans(self, file_session_factory, catalog):
        """Test that concurrent upgrades and reads always see one plan's entitlements."""
        service = EntitlementService(file_session_factory, catalog=catalog)
        service.create_tenant("tenant-race", "free")

        targets = ["starter", "professional", "enterprise"] * 3
        outcomes = []
        mixed = []
        stop = threading.Event()

        def upgrader(plan_id):
            try:
                service.upgrade("tenant-race", plan_id)
                outcomes.append(("ok", plan_id))
            except InvalidUpgradeDirectionError:
                outcomes.append(("refused", plan_id))

        def reader():
            while not stop.is_set():
                snapshot = service.get_subscription("tenant-race")
                plan = catalog.find_by_id(snapshot.plan_id)
                if snapshot.features != plan.features or snapshot.limits != plan.limits:
                    mixed.append(snapshot)

        readers = [threading.Thread(target=reader) for _ in range(2)]
        writers = [threading.Thread(target=upgrader, args=(t,)) for t in targets]
        for t in readers + writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        for t in readers:
            t.join()

        final = service.get_subscription("tenant-race")
        successes = [p for status, p in outcomes if status == "ok"]
        upgrade_events = [
            e for e in service.list_events("tenant-race")
            if e.type == TenantEventType.PLAN_UPGRADED
        ]

        assert mixed == []
        assert len(outcomes) == len(targets)
        assert final.plan_id == "enterprise"
        assert 1 <= len(successes) <= 3
        assert len(upgrade_events) == len(successes)
        # Each successful upgrade moved strictly up from the previous one
        ranks = [catalog.rank_of(e.data["newPlan"]) for e in reversed(upgrade_events)]
        assert ranks == sorted(set(ranks))

    def test_stale_version_raises_conflict(self, file_session_factory, catalog):
        """Test that a writer holding an old version loses on commit."""
        service = EntitlementService(file_session_factory, catalog=catalog)
        service.create_tenant("tenant-1", "starter")

        with file_session_factory() as stale_session, file_session_factory() as winner_session:
            stale = TenantSubscriptionRepository(stale_session).get("tenant-1")
            winner = TenantSubscriptionRepository(winner_session).get("tenant-1")

            winner.apply_plan(catalog.find_by_id("professional"), utcnow())
            commit_subscription(winner_session, "tenant-1")

            stale.apply_plan(catalog.find_by_id("enterprise"), utcnow())
            with pytest.raises(ConcurrentModificationError):
                commit_subscription(stale_session, "tenant-1")

        assert service.get_subscription("tenant-1").plan_id == "professional"
