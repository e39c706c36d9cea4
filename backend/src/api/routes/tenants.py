"""
Tenant subscription API routes.

Covers the tenant lifecycle, feature and limit checks, usage reporting,
plan upgrades and the tenant event history. Every route goes through the
EntitlementService stored on app.state.

Errors from the entitlement engine are returned with their own status code
and a structured detail body:
    {"error": "<code>", "message": "...", ...context}
"""

import logging
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.api.dependencies.entitlements import get_entitlement_service, raise_http
from src.entitlements.errors import EntitlementError
from src.entitlements.models import SubscriptionStatus, TenantEvent, TenantSubscription
from src.entitlements.resolver import LimitCheckResult
from src.entitlements.service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants", tags=["tenants"])


# Request/Response models

class CreateTenantRequest(BaseModel):
    """Request to subscribe a new tenant."""
    tenant_id: str = Field(..., description="Tenant identifier", min_length=1, max_length=255)
    plan_id: str = Field("free", description="Initial plan id")
    status: Optional[SubscriptionStatus] = Field(
        None, description="Initial status (defaults to trial when the plan has trial days)"
    )
    settings: Optional[Dict[str, Any]] = Field(None, description="Initial tenant settings")
    actor_id: Optional[str] = Field(None, description="User performing the action")


class UpdateSettingsRequest(BaseModel):
    """Partial settings update. Only timezone, currency, language, date_format and number_format."""
    settings: Dict[str, Any] = Field(..., description="Settings to merge")
    actor_id: Optional[str] = None


class ChangeStatusRequest(BaseModel):
    """Request to move a subscription to another status."""
    status: SubscriptionStatus
    actor_id: Optional[str] = None


class ActorRequest(BaseModel):
    """Optional actor attribution for body-less actions."""
    actor_id: Optional[str] = None


class ToggleFeatureRequest(BaseModel):
    """Request to switch a feature for one tenant."""
    enabled: bool = Field(..., description="New enabled status")
    actor_id: Optional[str] = None


class ReportUsageRequest(BaseModel):
    """Current usage totals keyed by metric name (e.g. maxUsers)."""
    counts: Dict[str, int] = Field(..., description="Metric name to current count")


class UpgradeRequest(BaseModel):
    """Request to move a tenant to a higher plan."""
    plan_id: str = Field(..., description="Target plan id")
    actor_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    """A tenant's subscription with its materialized entitlements."""
    tenant_id: str
    plan_id: str
    status: str
    features: Dict[str, Any]
    limits: Dict[str, Any]
    settings: Dict[str, Any]
    billing_cycle: str
    next_billing_date: Optional[str]
    created_at: str
    updated_at: str
    version: int
    can_upgrade: bool

    @classmethod
    def build(cls, subscription: TenantSubscription, can_upgrade: bool) -> "SubscriptionResponse":
        return cls(**subscription.to_dict(), can_upgrade=can_upgrade)


class TenantListResponse(BaseModel):
    tenant_ids: List[str]
    total: int


class FeatureCheckResponse(BaseModel):
    """Result of a feature check."""
    tenant_id: str
    feature: str
    enabled: bool
    required_plan: Optional[str] = None


class IntegrationCheckResponse(BaseModel):
    tenant_id: str
    integration: str
    enabled: bool


class LimitCheckResponse(BaseModel):
    """Limit decision. max and remaining are null when unlimited."""
    metric: str
    can_perform: bool
    current: int
    max: Optional[int]
    remaining: Optional[int]
    unlimited: bool
    percentage: float
    level: str
    is_near_limit: bool
    is_at_limit: bool

    @classmethod
    def from_result(cls, result: LimitCheckResult) -> "LimitCheckResponse":
        return cls(**result.to_dict())


class UsageSummaryResponse(BaseModel):
    tenant_id: str
    plan_id: str
    limits: List[LimitCheckResponse]


class UsageReportResponse(BaseModel):
    tenant_id: str
    counts: Dict[str, int]
    captured_at: str


class EventResponse(BaseModel):
    """One tenant event."""
    id: str
    tenant_id: str
    type: str
    data: Dict[str, Any]
    actor_id: Optional[str]
    timestamp: str

    @classmethod
    def from_event(cls, event: TenantEvent) -> "EventResponse":
        return cls(**event.to_dict())


class EventsListResponse(BaseModel):
    """Events, most recent first."""
    events: List[EventResponse]
    total: int


def _fail(e: EntitlementError, message: str, tenant_id: str) -> NoReturn:
    logger.warning(message, extra={
        "tenant_id": tenant_id,
        "error": e.error_code,
        "detail": str(e),
    })
    raise_http(e)


def _subscription_response(
    service: EntitlementService, subscription: TenantSubscription
) -> SubscriptionResponse:
    return SubscriptionResponse.build(
        subscription, can_upgrade=service.resolver.can_upgrade(subscription)
    )


# Routes

@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: CreateTenantRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Subscribe a new tenant to a plan."""
    try:
        subscription = service.create_tenant(
            body.tenant_id,
            initial_plan_id=body.plan_id,
            status=body.status,
            settings=body.settings,
            actor_id=body.actor_id,
        )
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Tenant creation failed", body.tenant_id)

    logger.info("Tenant created", extra={
        "tenant_id": body.tenant_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
    })
    return response


@router.get("", response_model=TenantListResponse)
async def list_tenants(
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status", description="Only tenants in this status"),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """List tenant ids, optionally filtered by status."""
    tenant_ids = service.list_tenants(status_filter)
    return TenantListResponse(tenant_ids=tenant_ids, total=len(tenant_ids))


@router.get("/{tenant_id}", response_model=SubscriptionResponse)
async def get_subscription(
    tenant_id: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Get a tenant's subscription."""
    try:
        subscription = service.get_subscription(tenant_id)
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Subscription lookup failed", tenant_id)
    return response


@router.patch("/{tenant_id}/settings", response_model=SubscriptionResponse)
async def update_settings(
    tenant_id: str,
    body: UpdateSettingsRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Merge tenant settings.

    Plan, features and limits cannot be changed here; use /upgrade.
    """
    try:
        subscription = service.update_settings(tenant_id, body.settings, actor_id=body.actor_id)
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Settings update rejected", tenant_id)
    return response


@router.put("/{tenant_id}/status", response_model=SubscriptionResponse)
async def change_status(
    tenant_id: str,
    body: ChangeStatusRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Move a subscription to trial, active, suspended or cancelled."""
    try:
        subscription = service.change_status(tenant_id, body.status, actor_id=body.actor_id)
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Status change rejected", tenant_id)
    return response


@router.post("/{tenant_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    tenant_id: str,
    body: Optional[ActorRequest] = None,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Cancel a subscription. Cancelled subscriptions cannot be changed again."""
    actor_id = body.actor_id if body else None
    try:
        subscription = service.cancel(tenant_id, actor_id=actor_id)
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Cancellation rejected", tenant_id)

    logger.info("Subscription cancelled", extra={"tenant_id": tenant_id, "actor_id": actor_id})
    return response


@router.get("/{tenant_id}/features/{feature}", response_model=FeatureCheckResponse)
async def check_feature(
    tenant_id: str,
    feature: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Check whether a tenant has a feature, and which plan would unlock it if not."""
    try:
        enabled = service.check_feature(tenant_id, feature)
        required_plan = None if enabled else service.required_plan_for(tenant_id, feature)
    except EntitlementError as e:
        _fail(e, "Feature check failed", tenant_id)
    return FeatureCheckResponse(
        tenant_id=tenant_id, feature=feature, enabled=enabled, required_plan=required_plan
    )


@router.put("/{tenant_id}/features/{feature}", response_model=SubscriptionResponse)
async def toggle_feature(
    tenant_id: str,
    feature: str,
    body: ToggleFeatureRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Switch one feature on or off for a tenant without changing its plan."""
    try:
        subscription = service.set_feature(tenant_id, feature, body.enabled, actor_id=body.actor_id)
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Feature toggle rejected", tenant_id)
    return response


@router.get("/{tenant_id}/integrations/{integration}", response_model=IntegrationCheckResponse)
async def check_integration(
    tenant_id: str,
    integration: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Check whether a tenant's plan includes an integration."""
    try:
        enabled = service.check_integration(tenant_id, integration)
    except EntitlementError as e:
        _fail(e, "Integration check failed", tenant_id)
    return IntegrationCheckResponse(tenant_id=tenant_id, integration=integration, enabled=enabled)


@router.get("/{tenant_id}/limits/{metric}", response_model=LimitCheckResponse)
async def check_limit(
    tenant_id: str,
    metric: str,
    current_usage: Optional[int] = Query(
        None, ge=0, description="Current count; defaults to the last reported usage"
    ),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Decide whether a tenant can add one more unit of a metric."""
    try:
        result = service.check_limit(tenant_id, metric, current_usage)
    except EntitlementError as e:
        _fail(e, "Limit check failed", tenant_id)
    return LimitCheckResponse.from_result(result)


@router.get("/{tenant_id}/usage", response_model=UsageSummaryResponse)
async def usage_summary(
    tenant_id: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Limit decisions for every metric at the last reported usage."""
    try:
        subscription, results = service.usage_summary(tenant_id)
    except EntitlementError as e:
        _fail(e, "Usage summary failed", tenant_id)
    return UsageSummaryResponse(
        tenant_id=tenant_id,
        plan_id=subscription.plan_id,
        limits=[LimitCheckResponse.from_result(r) for r in results],
    )


@router.put("/{tenant_id}/usage", response_model=UsageReportResponse)
async def report_usage(
    tenant_id: str,
    body: ReportUsageRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Store a tenant's current usage totals. Each value replaces the previous one."""
    try:
        snapshot = service.report_usage(tenant_id, body.counts)
    except EntitlementError as e:
        _fail(e, "Usage report rejected", tenant_id)
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail=str(e)
        )
    return UsageReportResponse(
        tenant_id=tenant_id,
        counts=snapshot.to_dict(),
        captured_at=snapshot.captured_at.isoformat(),
    )


@router.post("/{tenant_id}/upgrade", response_model=SubscriptionResponse)
async def upgrade(
    tenant_id: str,
    body: UpgradeRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Upgrade a tenant to a higher-rank plan.

    Features and limits are replaced with the target plan's in one update.
    Downgrades and same-plan requests return 409.
    """
    try:
        subscription = service.upgrade(tenant_id, body.plan_id, actor_id=body.actor_id)
        response = _subscription_response(service, subscription)
    except EntitlementError as e:
        _fail(e, "Upgrade rejected", tenant_id)
    return response


@router.get("/{tenant_id}/events", response_model=EventsListResponse)
async def list_events(
    tenant_id: str,
    limit: Optional[int] = Query(None, ge=1, le=100, description="Maximum events to return"),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Recent tenant events, most recent first."""
    try:
        events = service.list_events(tenant_id, limit=limit)
    except EntitlementError as e:
        _fail(e, "Event listing failed", tenant_id)
    return EventsListResponse(
        events=[EventResponse.from_event(ev) for ev in events],
        total=len(events),
    )
