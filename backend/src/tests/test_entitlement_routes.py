"""
API tests for the plan and tenant routes and the require_feature gate.
"""

import pytest
from fastapi import APIRouter, Depends, FastAPI
from fastapi.testclient import TestClient

from src.api.dependencies.entitlements import require_feature
from src.api.routes import plans, tenants
from src.entitlements.errors import UnknownFeatureError
from src.entitlements.loader import PlanCatalog
from src.entitlements.models import Feature, TenantSubscription
from src.entitlements.service import EntitlementService


@pytest.fixture
def gated_router():
    """Router with endpoints gated on plan features, as other modules would use it."""
    router = APIRouter()

    @router.get("/api/tenants/{tenant_id}/reports/advanced")
    async def advanced_reports(
        tenant_id: str,
        subscription: TenantSubscription = Depends(require_feature(Feature.ADVANCED_REPORTS)),
    ):
        return {"tenant_id": tenant_id, "plan_id": subscription.plan_id}

    @router.get("/api/export")
    async def export(subscription: TenantSubscription = Depends(require_feature("dataExport"))):
        return {"tenant_id": subscription.tenant_id}

    return router


@pytest.fixture
def app(service, gated_router):
    app = FastAPI()
    app.include_router(plans.router)
    app.include_router(tenants.router)
    app.include_router(gated_router)
    app.state.entitlement_service = service
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def create(client, tenant_id="tenant-1", plan_id="free", **extra):
    response = client.post("/api/tenants", json={"tenant_id": tenant_id, "plan_id": plan_id, **extra})
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# Plan routes
# =============================================================================

class TestPlanRoutes:

    def test_list_plans(self, client):
        response = client.get("/api/plans")

        assert response.status_code == 200
        plans_data = response.json()["plans"]
        assert [p["id"] for p in plans_data] == ["free", "starter", "professional", "enterprise"]
        assert plans_data[3]["limits"]["maxIntegrations"] == "unlimited"

    def test_get_plan(self, client):
        response = client.get("/api/plans/professional")

        assert response.status_code == 200
        assert response.json()["is_popular"] is True

    def test_get_unknown_plan(self, client):
        response = client.get("/api/plans/platinum")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "plan_not_found"


# =============================================================================
# Tenant routes
# =============================================================================

class TestTenantRoutes:

    def test_create_and_get(self, client):
        created = create(client, plan_id="starter")

        assert created["status"] == "trial"
        assert created["features"]["invoicing"] is True
        assert created["can_upgrade"] is True

        response = client.get("/api/tenants/tenant-1")
        assert response.status_code == 200
        assert response.json()["plan_id"] == "starter"

    def test_create_duplicate(self, client):
        create(client)

        response = client.post("/api/tenants", json={"tenant_id": "tenant-1"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "tenant_already_exists"

    def test_create_invalid_status(self, client):
        response = client.post("/api/tenants", json={"tenant_id": "t", "status": "frozen"})

        assert response.status_code == 422

    def test_list_tenants(self, client):
        create(client, "a", "starter")
        create(client, "b", "free")

        assert client.get("/api/tenants").json() == {"tenant_ids": ["a", "b"], "total": 2}
        assert client.get("/api/tenants", params={"status": "trial"}).json()["tenant_ids"] == ["a"]

    def test_get_unknown_tenant(self, client):
        response = client.get("/api/tenants/ghost")

        assert response.status_code == 404
        assert response.json()["detail"] == {
            "error": "tenant_not_found",
            "message": "Tenant 'ghost' not found",
            "tenant_id": "ghost",
        }

    def test_update_settings(self, client):
        create(client)

        response = client.patch("/api/tenants/tenant-1/settings", json={"settings": {"language": "en"}})

        assert response.status_code == 200
        assert response.json()["settings"]["language"] == "en"

    def test_update_settings_rejects_plan(self, client):
        create(client)

        response = client.patch("/api/tenants/tenant-1/settings", json={"settings": {"plan_id": "enterprise"}})

        assert response.status_code == 422
        assert response.json()["detail"]["fields"] == ["plan_id"]
        assert client.get("/api/tenants/tenant-1").json()["plan_id"] == "free"

    def test_change_status_and_cancel(self, client):
        create(client)

        suspended = client.put("/api/tenants/tenant-1/status", json={"status": "suspended"})
        cancelled = client.post("/api/tenants/tenant-1/cancel", json={"actor_id": "owner"})
        reactivate = client.put("/api/tenants/tenant-1/status", json={"status": "active"})

        assert suspended.json()["status"] == "suspended"
        assert cancelled.json()["status"] == "cancelled"
        assert reactivate.status_code == 409
        assert reactivate.json()["detail"]["error"] == "subscription_cancelled"

    def test_cancel_without_body(self, client):
        create(client)

        response = client.post("/api/tenants/tenant-1/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_check_feature(self, client):
        create(client, plan_id="starter")

        allowed = client.get("/api/tenants/tenant-1/features/invoicing").json()
        denied = client.get("/api/tenants/tenant-1/features/multiLocation").json()

        assert allowed == {"tenant_id": "tenant-1", "feature": "invoicing", "enabled": True, "required_plan": None}
        assert denied["enabled"] is False
        assert denied["required_plan"] == "professional"

    def test_check_unknown_feature(self, client):
        create(client)

        response = client.get("/api/tenants/tenant-1/features/teleport")

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "unknown_feature"

    def test_toggle_feature(self, client):
        create(client, plan_id="starter")

        response = client.put("/api/tenants/tenant-1/features/apiAccess", json={"enabled": True})

        assert response.status_code == 200
        assert response.json()["features"]["apiAccess"] is True
        assert response.json()["plan_id"] == "starter"

    def test_check_integration(self, client):
        create(client, plan_id="enterprise")

        response = client.get("/api/tenants/tenant-1/integrations/quickbooks")

        assert response.json()["enabled"] is True

    def test_check_limit(self, client):
        """Test the limit decision payload at 24 of 25 users."""
        create(client, plan_id="professional")

        response = client.get("/api/tenants/tenant-1/limits/maxUsers", params={"current_usage": 24})

        assert response.status_code == 200
        assert response.json() == {
            "metric": "maxUsers",
            "can_perform": True,
            "current": 24,
            "max": 25,
            "remaining": 1,
            "unlimited": False,
            "percentage": 96.0,
            "level": "critical",
            "is_near_limit": True,
            "is_at_limit": False,
        }

    def test_check_unlimited_limit(self, client):
        create(client, plan_id="enterprise")

        body = client.get(
            "/api/tenants/tenant-1/limits/maxIntegrations", params={"current_usage": 999}
        ).json()

        assert body["unlimited"] is True
        assert body["max"] is None
        assert body["remaining"] is None
        assert body["can_perform"] is True

    def test_check_limit_negative_usage(self, client):
        create(client)

        response = client.get("/api/tenants/tenant-1/limits/maxUsers", params={"current_usage": -1})

        assert response.status_code == 422

    def test_check_unknown_metric(self, client):
        create(client)

        response = client.get("/api/tenants/tenant-1/limits/maxWidgets")

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "unknown_metric"

    def test_report_usage_and_summary(self, client):
        create(client, plan_id="free")

        reported = client.put("/api/tenants/tenant-1/usage", json={"counts": {"maxUsers": 2}})
        summary = client.get("/api/tenants/tenant-1/usage").json()
        limit = client.get("/api/tenants/tenant-1/limits/maxUsers").json()

        assert reported.status_code == 200
        assert reported.json()["counts"]["maxUsers"] == 2
        assert summary["plan_id"] == "free"
        assert len(summary["limits"]) == 7
        assert limit["can_perform"] is False

    def test_report_negative_usage(self, client):
        create(client)

        response = client.put("/api/tenants/tenant-1/usage", json={"counts": {"maxUsers": -3}})

        assert response.status_code == 422

    def test_upgrade(self, client):
        create(client, plan_id="starter")

        response = client.post("/api/tenants/tenant-1/upgrade", json={"plan_id": "professional", "actor_id": "owner"})

        assert response.status_code == 200
        assert response.json()["plan_id"] == "professional"
        assert response.json()["features"]["multiLocation"] is True

        events = client.get("/api/tenants/tenant-1/events").json()
        assert events["events"][0]["type"] == "plan_upgraded"
        assert events["events"][0]["data"]["previousPlan"] == "starter"
        assert events["events"][0]["actor_id"] == "owner"

    def test_downgrade_refused(self, client):
        create(client, plan_id="starter")

        response = client.post("/api/tenants/tenant-1/upgrade", json={"plan_id": "free"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "invalid_upgrade_direction"
        assert client.get("/api/tenants/tenant-1").json()["plan_id"] == "starter"

    def test_upgrade_unknown_plan(self, client):
        create(client)

        response = client.post("/api/tenants/tenant-1/upgrade", json={"plan_id": "platinum"})

        assert response.status_code == 404

    def test_tenant_on_retired_plan(self, client, session_factory, plans_config, gated_router):
        """Test that removing a plan from the catalog keeps its tenants readable and upgradable."""
        create(client, "legacy", "starter")
        plans_config["plans"] = [p for p in plans_config["plans"] if p["id"] != "starter"]
        trimmed = FastAPI()
        trimmed.include_router(tenants.router)
        trimmed.include_router(gated_router)
        trimmed.state.entitlement_service = EntitlementService(
            session_factory, catalog=PlanCatalog.from_dict(plans_config)
        )
        trimmed_client = TestClient(trimmed)

        fetched = trimmed_client.get("/api/tenants/legacy")
        summary = trimmed_client.get("/api/tenants/legacy/usage")
        feature = trimmed_client.get("/api/tenants/legacy/features/multiLocation")
        gated = trimmed_client.get("/api/tenants/legacy/reports/advanced")
        upgraded = trimmed_client.post("/api/tenants/legacy/upgrade", json={"plan_id": "professional"})

        assert fetched.status_code == 200
        assert fetched.json()["plan_id"] == "starter"
        assert fetched.json()["can_upgrade"] is True
        assert summary.status_code == 200
        assert feature.json()["required_plan"] == "professional"
        assert gated.status_code == 402
        assert upgraded.status_code == 200
        assert upgraded.json()["plan_id"] == "professional"

    def test_events_limit(self, client):
        create(client)
        client.patch("/api/tenants/tenant-1/settings", json={"settings": {"language": "en"}})

        body = client.get("/api/tenants/tenant-1/events", params={"limit": 1}).json()

        assert body["total"] == 1
        assert body["events"][0]["type"] == "tenant_updated"

    def test_events_unknown_tenant(self, client):
        assert client.get("/api/tenants/ghost/events").status_code == 404


# =============================================================================
# require_feature gate
# =============================================================================

class TestRequireFeature:

    def test_allows_entitled_tenant(self, client):
        create(client, plan_id="professional")

        response = client.get("/api/tenants/tenant-1/reports/advanced")

        assert response.status_code == 200
        assert response.json() == {"tenant_id": "tenant-1", "plan_id": "professional"}

    def test_denies_with_upgrade_hint(self, client):
        """Test that a missing feature answers 402 naming the plan that unlocks it."""
        create(client, plan_id="starter")

        response = client.get("/api/tenants/tenant-1/reports/advanced")

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error"] == "entitlement_denied"
        assert detail["required_plan"] == "professional"
        assert detail["machine_readable"]["code"] == "plan_upgrade_required"

    def test_reads_tenant_from_header(self, client):
        create(client, "tenant-free", "free")
        create(client, "tenant-starter", "starter")

        assert client.get("/api/export", headers={"X-Tenant-ID": "tenant-starter"}).status_code == 200
        assert client.get("/api/export", headers={"X-Tenant-ID": "tenant-free"}).status_code == 402

    def test_missing_tenant_header(self, client):
        assert client.get("/api/export").status_code == 400

    def test_unknown_tenant(self, client):
        response = client.get("/api/export", headers={"X-Tenant-ID": "ghost"})

        assert response.status_code == 404

    def test_unknown_feature_fails_at_definition(self):
        with pytest.raises(UnknownFeatureError):
            require_feature("teleport")


# =============================================================================
# Application wiring
# =============================================================================

class TestApplication:

    def test_without_database_tenant_routes_answer_503(self, monkeypatch):
        """Test that the app starts without DATABASE_URL and reports it."""
        from src.entitlements.loader import reset_plan_catalog

        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("PLANS_CONFIG_PATH", raising=False)
        reset_plan_catalog()

        import main

        try:
            with TestClient(main.app) as client:
                health = client.get("/health")
                tenants_response = client.get("/api/tenants/tenant-1")
                plans_response = client.get("/api/plans")
        finally:
            reset_plan_catalog()

        assert health.status_code == 200
        assert health.json() == {"status": "ok", "database_configured": False}
        assert tenants_response.status_code == 503
        assert plans_response.status_code == 503

    def test_with_sqlite_database(self, monkeypatch, tmp_path):
        from src.database.session import dispose_engine
        from src.entitlements.loader import reset_plan_catalog

        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
        dispose_engine()
        reset_plan_catalog()

        import main

        try:
            with TestClient(main.app) as client:
                created = client.post("/api/tenants", json={"tenant_id": "tenant-1", "plan_id": "starter"})
                fetched = client.get("/api/tenants/tenant-1")
                health = client.get("/health")
        finally:
            dispose_engine()
            reset_plan_catalog()

        assert created.status_code == 201
        assert fetched.json()["plan_id"] == "starter"
        assert health.json()["database_configured"] is True
