"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for reaching the EntitlementService
and gating routes on a plan feature.

Usage:
    @router.get("/reports/advanced")
    async def advanced_reports(
        subscription: TenantSubscription = Depends(require_feature(Feature.ADVANCED_REPORTS)),
    ):
        ...
"""

import logging
from typing import Callable, NoReturn, Optional, Union

from fastapi import Header, HTTPException, Request, status

from src.entitlements.errors import EntitlementDeniedError, EntitlementError
from src.entitlements.models import Feature, TenantSubscription
from src.entitlements.service import EntitlementService


logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def get_entitlement_service(request: Request) -> EntitlementService:
    """
    Return the process-wide EntitlementService built at start-up.

    Raises 503 if the database was not configured.
    """
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )
    return service


def raise_http(exc: EntitlementError) -> NoReturn:
    """Translate an entitlement error into the matching HTTPException."""
    raise HTTPException(status_code=exc.http_status, detail=exc.to_dict()) from exc


def require_feature(feature: Union[str, Feature]) -> Callable:
    """
    Factory function to create a feature gate dependency.

    The tenant id comes from a ``tenant_id`` path parameter when the route
    has one, otherwise from the X-Tenant-ID header.

    Args:
        feature: The Feature to require (name strings are parsed eagerly,
            so a typo fails at import time rather than per request)

    Returns:
        A FastAPI dependency that returns the tenant's subscription snapshot
        when entitled and raises 402 Payment Required otherwise.
    """
    feature = Feature.parse(feature)

    def check_feature_entitlement(
        request: Request,
        x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER),
    ) -> TenantSubscription:
        tenant_id = request.path_params.get("tenant_id") or x_tenant_id
        if not tenant_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{TENANT_HEADER} header is required"
            )

        service = get_entitlement_service(request)
        try:
            subscription = service.get_subscription(tenant_id)
        except EntitlementError as e:
            raise_http(e)

        if not service.resolver.check_feature(subscription, feature):
            denied = EntitlementDeniedError(
                tenant_id=tenant_id,
                feature=feature.value,
                plan_id=subscription.plan_id,
                required_plan=service.resolver.required_plan_for(subscription, feature),
            )
            logger.warning(
                "Feature access denied - not entitled",
                extra={
                    "tenant_id": tenant_id,
                    "plan_id": subscription.plan_id,
                    "feature": feature.value,
                    "required_plan": denied.required_plan,
                },
            )
            raise_http(denied)

        return subscription

    return check_feature_entitlement
