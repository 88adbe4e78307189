"""
RevenueCat webhook receiver.

SECURITY:
- Signature is verified over the raw body before anything is parsed
- No user authentication (calls come from the provider, not users)
- user_id comes from the signed payload only

Responses:
- 200 {"success": true}                   processed, replayed or ignored
- 200 {"success": true, "skipped": true}  sandbox event in production
- 400 malformed payload (provider should not retry)
- 401 bad signature
- 500 persistence failure (provider retries)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from tiergate.api.dependencies import get_service
from tiergate.service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/revenuecat")
async def handle_revenuecat_webhook(
    request: Request,
    x_revenuecat_signature: Optional[str] = Header(None, alias="X-RevenueCat-Signature"),
    service: EntitlementService = Depends(get_service),
):
    body = await request.body()
    result = await run_in_threadpool(service.handle_webhook, body, x_revenuecat_signature)
    return result.to_response()
