"""
Admin API endpoints (X-Admin-Key).

- Billing events awaiting manual replay
- Persisting elapsed grace periods (called by an external scheduler)
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from clipper_billing.auth.dependencies import get_reconciler, verify_admin_key
from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.models.billing_event import BillingEventFailure
from clipper_billing.observability.logging import OperationContext

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_key)],
)


class FailureListResponse(BaseModel):
    failures: list[BillingEventFailure]
    limit: int
    offset: int


class GraceExpiryResponse(BaseModel):
    downgraded: int


@router.get("/billing-events/failures", response_model=FailureListResponse)
async def list_billing_event_failures(
    reconciler: BillingEventReconciler = Depends(get_reconciler),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    include_resolved: bool = Query(False),
) -> FailureListResponse:
    failures = await reconciler.list_failures(
        limit=limit, offset=offset, include_resolved=include_resolved
    )
    return FailureListResponse(failures=failures, limit=limit, offset=offset)


@router.post("/grace-periods/expire", response_model=GraceExpiryResponse)
async def expire_grace_periods(
    reconciler: BillingEventReconciler = Depends(get_reconciler),
) -> GraceExpiryResponse:
    """Downgrade every subscription whose grace window has elapsed."""
    with OperationContext("grace_expiry") as op:
        downgraded = await reconciler.expire_grace_periods()
        op.context["downgraded"] = downgraded
    return GraceExpiryResponse(downgraded=downgraded)
