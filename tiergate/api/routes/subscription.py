"""
Subscription entitlement routes.

The caller identifies the user in the body (userId). Check routes only read;
they never consume quota. Consumption is recorded by the action handlers
after the gated work succeeds.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from tiergate.api.dependencies import get_service, require_admin
from tiergate.models import Tier
from tiergate.service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


# Request Models

class UserRequest(BaseModel):
    """Body carrying the user to evaluate."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(..., alias="userId", min_length=1, description="Provider app user id")


class ReportChatRequest(UserRequest):
    report_id: str = Field(..., alias="reportId", min_length=1, description="Report the chat belongs to")


class ModelCheckRequest(UserRequest):
    model_id: str = Field(..., alias="modelId", min_length=1, description="Requested LLM model id")


class SetTierRequest(UserRequest):
    tier: Tier = Field(..., description="Tier to force for the user")


def _ok(data) -> dict:
    return {"success": True, "data": data}


# Query routes

@router.post("/tier")
async def get_tier(
    body: UserRequest,
    service: EntitlementService = Depends(get_service),
):
    """Effective tier, limits and remaining quota. Reconciles with the provider first."""
    info = await service.get_tier_info(body.user_id)
    return _ok(info.to_dict())


@router.post("/check-report")
def check_report(
    body: UserRequest,
    service: EntitlementService = Depends(get_service),
):
    return _ok(service.check_report(body.user_id).to_dict())


@router.post("/check-chat")
def check_chat(
    body: ReportChatRequest,
    service: EntitlementService = Depends(get_service),
):
    return _ok(service.check_chat(body.user_id, body.report_id).to_dict())


@router.post("/check-snapshot")
def check_snapshot(
    body: UserRequest,
    service: EntitlementService = Depends(get_service),
):
    return _ok(service.check_snapshot(body.user_id).to_dict())


@router.post("/check-model")
def check_model(
    body: ModelCheckRequest,
    service: EntitlementService = Depends(get_service),
):
    """Disallowed models come back with the model the caller must use instead."""
    return _ok(service.check_model(body.user_id, body.model_id).to_dict())


@router.post("/max-days")
def max_days(
    body: UserRequest,
    service: EntitlementService = Depends(get_service),
):
    return _ok({"maxDays": service.max_days(body.user_id)})


# Admin routes

@router.post("/admin/set-tier", dependencies=[Depends(require_admin)])
def admin_set_tier(
    body: SetTierRequest,
    service: EntitlementService = Depends(get_service),
):
    """
    Force a user's tier.

    Only the tier changes; status, period end and cancel flag are kept.
    The next provider reconciliation may overwrite the override.
    """
    subscription = service.set_tier(body.user_id, body.tier)
    logger.info("Admin tier override applied", extra={
        "user_id": body.user_id,
        "tier": body.tier.value,
    })
    return _ok({
        "userId": subscription.user_id,
        "tier": subscription.tier.value,
        "message": f"User tier set to {subscription.tier.value}",
        "subscription": subscription.to_dict(),
    })


@router.get("/admin/user/{user_id}", dependencies=[Depends(require_admin)])
def admin_get_user(
    user_id: str,
    service: EntitlementService = Depends(get_service),
):
    subscription = service.get_subscription(user_id)
    usage = service.ledger.usage(user_id)
    return _ok({
        "userId": subscription.user_id,
        "effectiveTier": service.effective_tier(user_id).value,
        "subscription": subscription.to_dict(),
        "usage": {
            "day": usage.day,
            "weekStart": usage.week_start,
            "communicationsToday": usage.communications_today,
            "snapshotsToday": usage.snapshots_today,
            "reportsThisWeek": usage.reports_this_week,
        },
    })
