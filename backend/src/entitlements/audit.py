"""
Tenant event log: bounded record of entitlement-affecting actions.

Provides:
- TenantEventLog: process-wide, most-recent-first ring buffer of TenantEvent
- DEFAULT_EVENT_LOG_CAPACITY: events kept per process (100)

All tenants share one buffer, so a tenant never has more than the capacity
and the process as a whole never holds more than the capacity either.

Every appended event is also emitted on the "entitlements.audit" logger so
log shipping keeps a copy after the buffer evicts it.

NOTE: This is a feed for the UI, not a compliance audit trail. Events past
the capacity are dropped, never archived.
"""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, List, Mapping, Optional

from src.entitlements.models import TenantEvent, TenantEventType

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")

DEFAULT_EVENT_LOG_CAPACITY = 100


class TenantEventLog:
    """
    In-process event log: one bounded buffer shared by every tenant.

    Reads filter the shared buffer by tenant id. A busy tenant can evict
    another tenant's older events.
    """

    def __init__(self, capacity: int = DEFAULT_EVENT_LOG_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._events: Deque[TenantEvent] = deque(maxlen=capacity)
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def append(
        self,
        tenant_id: str,
        event_type: TenantEventType,
        data: Optional[Mapping[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> TenantEvent:
        """Record an event; the oldest event beyond capacity is dropped."""
        event = TenantEvent(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            type=event_type,
            data=dict(data or {}),
            actor_id=actor_id,
            timestamp=datetime.now(timezone.utc),
        )

        with self._lock:
            # appendleft on a full deque discards from the right (oldest)
            self._events.appendleft(event)

        audit_logger.info(
            event_type.value,
            extra={
                "event_type": event_type.value,
                "tenant_id": tenant_id,
                "audit_data": event.to_dict(),
            },
        )
        return event

    def events_for(self, tenant_id: str, limit: Optional[int] = None) -> List[TenantEvent]:
        """Events for a tenant, most recent first."""
        with self._lock:
            events = [e for e in self._events if e.tenant_id == tenant_id]
        if limit is not None:
            events = events[:limit]
        return events

    def count(self, tenant_id: str) -> int:
        with self._lock:
            return sum(1 for e in self._events if e.tenant_id == tenant_id)

    def clear(self) -> None:
        """
        Drop every buffered event (for testing).

        WARNING: Only use in tests!
        """
        with self._lock:
            self._events.clear()
