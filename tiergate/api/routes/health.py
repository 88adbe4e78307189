from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    settings = request.app.state.settings
    return {
        "status": "ok",
        "environment": settings.environment,
        "webhookVerification": request.app.state.service.webhooks.verifies_signatures,
        "reconciliation": request.app.state.service.reconciler.enabled,
    }
