"""
Usage metering API endpoints.

- Dashboard view of the current period
- Advisory quota checks
- Authoritative charges (429 with an upgrade path on denial)
- Per-clip word limit check
- Usage audit trail
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clipper_billing.auth.dependencies import (
    get_app_settings,
    get_authenticated_user,
    get_quota_gate,
    get_usage_event_log,
)
from clipper_billing.billing.quota_gate import QuotaGate
from clipper_billing.billing.usage_events import UsageEventLog
from clipper_billing.models.usage import (
    QuotaExceeded,
    QuotaStatus,
    UsageCharged,
    UsageEventPage,
    UsageEventType,
    UsageFeature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/usage", tags=["Usage"])


class ChargeRequest(BaseModel):
    """Charge request body."""

    feature: UsageFeature
    amount: int = Field(default=1, ge=1, le=100_000)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ClipLengthRequest(BaseModel):
    word_count: int = Field(..., ge=0)


def _rate_limit_headers(limit: int | None, remaining: int | None) -> dict[str, str]:
    if limit is None:
        return {}
    return {"X-RateLimit-Limit": str(limit), "X-RateLimit-Remaining": str(remaining)}


@router.get("/current")
async def get_current_usage(
    user_id: str = Depends(get_authenticated_user),
    gate: QuotaGate = Depends(get_quota_gate),
) -> dict[str, Any]:
    """Counters and limits for the current calendar month."""
    return await gate.usage_summary(user_id)


@router.get("/quota/{feature}", response_model=QuotaStatus)
async def check_quota(
    feature: UsageFeature,
    user_id: str = Depends(get_authenticated_user),
    gate: QuotaGate = Depends(get_quota_gate),
) -> QuotaStatus:
    """Advisory check: would one more unit fit? Charges nothing."""
    return await gate.check_only(user_id, feature)


@router.post(
    "/charge",
    response_model=UsageCharged,
    responses={status.HTTP_429_TOO_MANY_REQUESTS: {"description": "Quota exceeded"}},
)
async def charge_usage(
    body: ChargeRequest,
    request: Request,
    user_id: str = Depends(get_authenticated_user),
    gate: QuotaGate = Depends(get_quota_gate),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key", max_length=255),
):
    """
    Charge metered usage.

    Returns:
        200 UsageCharged, or 429 with the feature, limit and upgrade URL

    Raises:
        409: Idempotency-Key reused for a different charge
        503: Store unavailable (nothing is reported as denied)
    """
    result = await gate.check_and_charge(
        user_id,
        body.feature,
        amount=body.amount,
        idempotency_key=idempotency_key,
        metadata=body.metadata,
    )

    if isinstance(result, QuotaExceeded):
        settings = get_app_settings(request)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "quota_exceeded",
                "message": (
                    f"Monthly {result.feature.value} limit of {result.limit} reached. "
                    "Upgrade to Premium to continue."
                ),
                "feature": result.feature.value,
                "current_usage": result.current_usage,
                "limit": result.limit,
                "tier": result.tier.value,
                "upgrade_url": settings.stripe.upgrade_url,
            },
            headers=_rate_limit_headers(result.limit, result.remaining),
        )

    return JSONResponse(
        content=result.model_dump(mode="json"),
        headers=_rate_limit_headers(result.limit, result.remaining),
    )


@router.post("/clip-length", response_model=QuotaStatus)
async def check_clip_length(
    body: ClipLengthRequest,
    user_id: str = Depends(get_authenticated_user),
    gate: QuotaGate = Depends(get_quota_gate),
) -> QuotaStatus:
    """Check one clip against the per-clip word limit."""
    return await gate.check_words_per_clip(user_id, body.word_count)


@router.get("/events", response_model=UsageEventPage)
async def list_usage_events(
    user_id: str = Depends(get_authenticated_user),
    event_log: UsageEventLog = Depends(get_usage_event_log),
    event_type: UsageEventType | None = Query(None),
    start: datetime | None = Query(None, description="Inclusive lower bound"),
    end: datetime | None = Query(None, description="Exclusive upper bound"),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
) -> UsageEventPage:
    """The caller's usage audit trail, newest first."""
    return await event_log.query(
        user_id, event_type=event_type, start=start, end=end, limit=limit, offset=offset
    )
