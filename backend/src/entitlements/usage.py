"""
Usage reporting: point-in-time consumption counts from business stores.

The engine never counts anything itself. Stores that own the records
(products, users, invoices, ...) report their current totals here, and the
service reads the latest figure when a caller does not pass one explicitly.

Each report replaces the previous figure for that metric; there is no
history and no incrementing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Mapping, Union

from src.entitlements.models import Metric

logger = logging.getLogger(__name__)


def _validate_count(metric: Metric, count: int) -> int:
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValueError(f"usage for {metric.value} must be an integer, got {count!r}")
    if count < 0:
        raise ValueError(f"usage for {metric.value} must be non-negative, got {count}")
    return count


@dataclass(frozen=True)
class UsageSnapshot:
    """Usage counts for one tenant at one instant. Unreported metrics read 0."""
    tenant_id: str
    counts: Mapping[Metric, int] = field(default_factory=dict)
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, metric: Metric) -> int:
        return self.counts.get(metric, 0)

    def to_dict(self) -> Dict[str, int]:
        return {m.value: self.get(m) for m in Metric}

    @classmethod
    def from_mapping(cls, tenant_id: str, raw: Mapping[Union[str, Metric], int]) -> "UsageSnapshot":
        counts: Dict[Metric, int] = {}
        for key, value in raw.items():
            metric = Metric.parse(key)
            counts[metric] = _validate_count(metric, value)
        return cls(tenant_id=tenant_id, counts=counts)


class UsageReporter:
    """
    Latest reported usage per tenant and metric.

    Thread-safe. Usage:
        reporter.report("tenant-1", Metric.MAX_USERS, 8)
        reporter.current("tenant-1", Metric.MAX_USERS)  # 8
    """

    def __init__(self):
        self._latest: Dict[str, Dict[Metric, int]] = {}
        self._lock = Lock()

    def report(self, tenant_id: str, metric: Union[str, Metric], count: int) -> None:
        """Record the tenant's current total for a metric, replacing the last one."""
        metric = Metric.parse(metric)
        count = _validate_count(metric, count)
        with self._lock:
            self._latest.setdefault(tenant_id, {})[metric] = count
        logger.debug(
            "Usage reported",
            extra={"tenant_id": tenant_id, "metric": metric.value, "count": count},
        )

    def report_many(self, tenant_id: str, counts: Mapping[Union[str, Metric], int]) -> UsageSnapshot:
        """Record several metrics at once; validates all before storing any."""
        snapshot = UsageSnapshot.from_mapping(tenant_id, counts)
        with self._lock:
            self._latest.setdefault(tenant_id, {}).update(snapshot.counts)
        return self.snapshot(tenant_id)

    def current(self, tenant_id: str, metric: Union[str, Metric]) -> int:
        metric = Metric.parse(metric)
        with self._lock:
            return self._latest.get(tenant_id, {}).get(metric, 0)

    def snapshot(self, tenant_id: str) -> UsageSnapshot:
        with self._lock:
            counts = dict(self._latest.get(tenant_id, {}))
        return UsageSnapshot(tenant_id=tenant_id, counts=counts)

    def forget(self, tenant_id: str) -> None:
        with self._lock:
            self._latest.pop(tenant_id, None)
