"""Billing ledger service.

Recording is fire-and-forget: a ledger failure is logged and never undoes
or fails the storage operation that triggered it.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from cloudvault.billing.models import ActivityType, BillingActivity
from cloudvault.billing.repository import BillingRepository, billing_repo_from_env

logger = logging.getLogger(__name__)


class BillingService:
    def __init__(self, repo: Optional[BillingRepository] = None) -> None:
        self.repo = repo or billing_repo_from_env()

    def record(
        self,
        tenant_id: str,
        activity_type: Union[str, ActivityType],
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[BillingActivity]:
        details = dict(details or {})
        try:
            activity = BillingActivity(
                tenant_id=tenant_id,
                type=ActivityType(activity_type),
                details=details,
                cost=Decimal(str(details.get("cost", 0))),
            )
            return self.repo.append(activity)
        except Exception:
            logger.warning("Failed to record %s billing activity for %s", activity_type, tenant_id, exc_info=True)
            return None

    def list_activities(self, tenant_id: str, limit: int = 200, offset: int = 0) -> List[BillingActivity]:
        return self.repo.list_activities(tenant_id, limit=limit, offset=offset)

    def summary(self, tenant_id: str) -> Dict[str, Dict[str, object]]:
        """Count and summed cost per activity type."""
        grouped: Dict[str, Dict[str, object]] = {}
        for activity in self.list_activities(tenant_id, limit=10_000):
            agg = grouped.setdefault(activity.type.value, {"count": 0, "cost": Decimal("0")})
            agg["count"] += 1
            agg["cost"] += activity.cost
        return grouped


_default_service: Optional[BillingService] = None


def get_billing_service() -> BillingService:
    global _default_service
    if _default_service is None:
        _default_service = BillingService()
    return _default_service


def set_billing_service(service: Optional[BillingService]) -> None:
    global _default_service
    _default_service = service
