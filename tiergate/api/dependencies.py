"""FastAPI dependencies shared by the entitlement routes."""

import hmac
import logging
from typing import Optional

from fastapi import Header, Request

from tiergate.config import Settings
from tiergate.service import EntitlementService

from .errors import PermissionDeniedError, ServiceUnavailableError

logger = logging.getLogger(__name__)


def get_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise ServiceUnavailableError("Entitlement service not configured")
    return service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_admin(
    request: Request,
    x_admin_secret: Optional[str] = Header(None, alias="X-Admin-Secret"),
) -> None:
    """
    Gate admin routes on the shared admin secret.

    With no ADMIN_SECRET configured the admin routes are disabled entirely.
    """
    expected = get_settings(request).admin_secret
    if not expected:
        logger.warning("Admin route called but ADMIN_SECRET is not configured", extra={
            "path": request.url.path,
        })
        raise PermissionDeniedError("Admin access is disabled")

    if not x_admin_secret or not hmac.compare_digest(
        x_admin_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Invalid admin secret", extra={"path": request.url.path})
        raise PermissionDeniedError("Forbidden")
