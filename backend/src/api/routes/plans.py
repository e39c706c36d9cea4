"""
Plan catalog API routes.

Read-only: the catalog is loaded from config/plans.json at start-up.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.api.dependencies.entitlements import get_entitlement_service, raise_http
from src.entitlements.errors import EntitlementError
from src.entitlements.models import Plan
from src.entitlements.service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plans", tags=["plans"])


# Request/Response models

class PlanResponse(BaseModel):
    """Plan information."""
    id: str
    rank: int
    name: str
    description: Optional[str]
    price: str
    currency: str
    billing_cycle: str
    trial_days: int
    is_popular: bool
    features: Dict[str, Any]
    limits: Dict[str, Any]

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(**plan.to_dict())


class PlansListResponse(BaseModel):
    """All plans, lowest rank first."""
    plans: List[PlanResponse]


# Routes

@router.get("", response_model=PlansListResponse)
async def list_plans(service: EntitlementService = Depends(get_entitlement_service)):
    """List every plan in the catalog, ordered by rank."""
    return PlansListResponse(
        plans=[PlanResponse.from_plan(p) for p in service.available_plans()]
    )


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Get a single plan by id."""
    try:
        return PlanResponse.from_plan(service.catalog.find_by_id(plan_id))
    except EntitlementError as e:
        logger.warning("Plan lookup failed", extra={"plan_id": plan_id, "error": e.error_code})
        raise_http(e)
