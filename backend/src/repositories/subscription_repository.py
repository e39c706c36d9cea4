"""
Tenant subscription repository for data access operations.

Encapsulates all database operations for tenant subscriptions with:
- Tenant isolation (every lookup is by tenant_id)
- Domain conversion (callers outside the write path get frozen snapshots)
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from src.entitlements.errors import TenantNotFoundError
from src.entitlements.models import SubscriptionStatus, TenantSubscription
from src.models.tenant_subscription import TenantSubscriptionRecord

logger = logging.getLogger(__name__)


class TenantSubscriptionRepository:
    """
    Repository for tenant subscription rows.

    Does not commit; the caller owns the transaction.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def find(self, tenant_id: str) -> Optional[TenantSubscriptionRecord]:
        return self.db.query(TenantSubscriptionRecord).filter(
            TenantSubscriptionRecord.tenant_id == tenant_id
        ).first()

    def get(self, tenant_id: str) -> TenantSubscriptionRecord:
        """
        Get the subscription row for a tenant.

        Raises:
            TenantNotFoundError: If the tenant has no subscription
        """
        record = self.find(tenant_id)
        if record is None:
            raise TenantNotFoundError(tenant_id)
        return record

    def get_snapshot(self, tenant_id: str) -> TenantSubscription:
        return self.get(tenant_id).to_domain()

    def exists(self, tenant_id: str) -> bool:
        return self.find(tenant_id) is not None

    def add(self, record: TenantSubscriptionRecord) -> TenantSubscriptionRecord:
        self.db.add(record)
        self.db.flush()
        logger.info("Tenant subscription created", extra={
            "tenant_id": record.tenant_id,
            "plan_id": record.plan_id,
            "status": record.status,
        })
        return record

    def list_tenant_ids(self, status: Optional[SubscriptionStatus] = None) -> List[str]:
        query = self.db.query(TenantSubscriptionRecord.tenant_id)
        if status is not None:
            query = query.filter(TenantSubscriptionRecord.status == status.value)
        return [row.tenant_id for row in query.order_by(TenantSubscriptionRecord.tenant_id).all()]

