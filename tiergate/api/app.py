"""
FastAPI application factory.

    uvicorn tiergate.api.app:create_app --factory
"""

import logging
from typing import Optional

from fastapi import FastAPI

from tiergate.api.errors import register_error_handlers
from tiergate.api.routes import health, subscription, webhooks
from tiergate.config import Settings, load_settings
from tiergate.service import EntitlementService, build_service

logger = logging.getLogger(__name__)


def create_app(
    service: Optional[EntitlementService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the API around a service.

    An injected service must verify webhooks with the same secret the
    settings advertise; a mismatch raises ValueError.
    """
    settings = settings or load_settings()
    if service is None:
        service = build_service(settings)
    elif not service.webhooks.matches_secret(settings.webhook_secret):
        raise ValueError("service webhook secret does not match settings.webhook_secret")

    if not service.webhooks.verifies_signatures:
        logger.warning("REVENUECAT_WEBHOOK_SECRET not set - webhook signatures are not verified")

    app = FastAPI(title="tiergate", description="Subscription entitlement enforcement")
    app.state.settings = settings
    app.state.service = service

    register_error_handlers(app)
    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(subscription.router)
    return app
