from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from tiergate.service import EntitlementService, build_service

logger = logging.getLogger(__name__)


@dataclass
class ReconcileStats:
    started_at: str
    completed_at: Optional[str] = None
    users_checked: int = 0
    corrections: int = 0
    errors: int = 0


async def run_reconcile_cycle(service: Optional[EntitlementService] = None) -> ReconcileStats:
    """Background drift reconciliation job.

    Responsibilities:
    - re-read every known user's subscription from the billing provider
    - correct records whose webhooks were dropped or delayed

    Provider failures fall back to local state inside the sync itself; a
    store failure for one user is counted and the cycle moves on.
    """

    svc = service or build_service()
    stats = ReconcileStats(started_at=datetime.now(timezone.utc).isoformat())

    if not svc.reconciler.enabled:
        logger.info("Billing provider not configured, nothing to reconcile")
        stats.completed_at = datetime.now(timezone.utc).isoformat()
        return stats

    for user_id in svc.registry.store.user_ids():
        stats.users_checked += 1
        try:
            before = svc.registry.get(user_id)
            after = await svc.reconcile(user_id)
        except Exception:
            logger.exception("Reconciliation failed for user", extra={"user_id": user_id})
            stats.errors += 1
            continue
        if after.state() != before.state():
            stats.corrections += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info("Reconciliation cycle complete", extra={
        "users_checked": stats.users_checked,
        "corrections": stats.corrections,
        "errors": stats.errors,
    })
    return stats


def run_forever(interval_seconds: int = 3600, service: Optional[EntitlementService] = None) -> None:
    svc = service or build_service()

    async def _loop() -> None:
        while True:
            await run_reconcile_cycle(svc)
            await asyncio.sleep(interval_seconds)

    asyncio.run(_loop())


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_forever(int(os.getenv("RECONCILE_INTERVAL_SECONDS", "3600")))
