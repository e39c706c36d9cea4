"""
Structured error classes for entitlement resolution and plan changes.

Every error carries a machine-readable error_code and the HTTP status the
API layer should answer with. None of them is fatal to the process; callers
show an error or refuse the action.
"""

from typing import Any, Dict, Optional
from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "entitlement_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": self.message,
            **self.context,
        }


class CatalogConfigError(EntitlementError):
    """Raised when config/plans.json is malformed or breaks plan ordering."""

    error_code = "catalog_config_invalid"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class PlanNotFoundError(EntitlementError):
    """Raised when a plan id is not in the catalog."""

    error_code = "plan_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan '{plan_id}' not found", plan_id=plan_id)


class TenantNotFoundError(EntitlementError):
    """Raised when no subscription exists for a tenant id."""

    error_code = "tenant_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant '{tenant_id}' not found", tenant_id=tenant_id)


class TenantAlreadyExistsError(EntitlementError):
    error_code = "tenant_already_exists"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant '{tenant_id}' already has a subscription", tenant_id=tenant_id)


class InvalidUpgradeDirectionError(EntitlementError):
    """
    Raised when the target plan does not rank strictly above the current one.

    Only upgrades go through the upgrade workflow; downgrades are a separate
    workflow that does not exist yet.
    """

    error_code = "invalid_upgrade_direction"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str, current_plan: str, target_plan: str):
        self.tenant_id = tenant_id
        self.current_plan = current_plan
        self.target_plan = target_plan
        super().__init__(
            f"Cannot upgrade from '{current_plan}' to '{target_plan}': "
            "target plan must rank above the current plan",
            tenant_id=tenant_id,
            current_plan=current_plan,
            target_plan=target_plan,
        )


class SubscriptionCancelledError(EntitlementError):
    """Raised when a cancelled subscription is asked to change."""

    error_code = "subscription_cancelled"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Subscription for '{tenant_id}' is cancelled", tenant_id=tenant_id)


class ConcurrentModificationError(EntitlementError):
    """Raised when another writer committed the same subscription first."""

    error_code = "concurrent_modification"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(
            f"Subscription for '{tenant_id}' was modified concurrently, retry",
            tenant_id=tenant_id,
        )


class UnknownFeatureError(EntitlementError):
    """Raised when a feature name is outside the closed Feature enum."""

    error_code = "unknown_feature"
    http_status = 422

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Unknown feature '{feature}'", feature=feature)


class UnknownMetricError(EntitlementError):
    """Raised when a metric name is outside the closed Metric enum."""

    error_code = "unknown_metric"
    http_status = 422

    def __init__(self, metric: str):
        self.metric = metric
        super().__init__(f"Unknown metric '{metric}'", metric=metric)


class InvalidSettingsError(EntitlementError):
    error_code = "invalid_settings"
    http_status = 422

    def __init__(self, fields):
        self.fields = sorted(fields)
        super().__init__(
            f"Not editable as tenant settings: {', '.join(self.fields)}",
            fields=self.fields,
        )


class EntitlementDeniedError(EntitlementError):
    """
    Raised when a feature gate denies access.

    Includes the cheapest plan that would unlock the feature, if any.
    """

    error_code = "entitlement_denied"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        tenant_id: str,
        feature: str,
        plan_id: Optional[str] = None,
        required_plan: Optional[str] = None,
    ):
        self.tenant_id = tenant_id
        self.feature = feature
        self.plan_id = plan_id
        self.required_plan = required_plan
        super().__init__(
            f"Feature '{feature}' is not included in plan '{plan_id}'",
            tenant_id=tenant_id,
            feature=feature,
            plan_id=plan_id,
            required_plan=required_plan,
            machine_readable={
                "code": self._get_reason_code(),
                "feature": feature,
            },
        )

    def _get_reason_code(self) -> str:
        """Get machine-readable reason code."""
        if self.required_plan:
            return "plan_upgrade_required"
        return "feature_not_entitled"
