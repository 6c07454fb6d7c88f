"""
Cron Router - external trigger for the position monitor
Auth: Authorization: Bearer <CRON_SECRET>
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from api.dependencies import VaultXContainer, get_container
from infrastructure.audit import AuditEvent
from infrastructure.errors import UnauthorizedError

logger = logging.getLogger("Cron")

router = APIRouter(prefix="/api/cron", tags=["Cron"])

MONITOR_ENDPOINT = "/api/cron/monitor-positions"


@router.get("/monitor-positions")
async def monitor_positions(
    authorization: Optional[str] = Header(None),
    container: VaultXContainer = Depends(get_container),
):
    cron_secret = container.secrets.get("CRON_SECRET")
    if not cron_secret:
        logger.error("[Cron] CRON_SECRET env var is not set")
        return JSONResponse(status_code=500, content={"error": "Server misconfiguration"})

    if authorization != f"Bearer {cron_secret}":
        await container.audit.record(AuditEvent.AUTH_FAILURE, endpoint=MONITOR_ENDPOINT)
        raise UnauthorizedError()

    logger.info("[Cron] Starting position monitoring run...")
    summary = await container.monitor.run()
    counts = summary.counts()
    logger.info(
        f"[Cron] Completed - checked: {counts['usersChecked']}, "
        f"rebalanced: {counts['rebalancesTriggered']}, skipped: {counts['skipped']}, errors: {counts['errors']}"
    )

    return {
        "success": True,
        "summary": counts,
        "details": [d.to_dict() for d in summary.details],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
