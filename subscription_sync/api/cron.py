"""Scheduled job endpoints.

Implements:
- GET /api/cron/deactivations  (run the deferred deactivation sweep)

Requires the cron secret as bearer token or ``?secret=``.
"""

from fastapi import APIRouter, Depends

from subscription_sync.api.security import require_cron
from subscription_sync.logging_config import get_logger
from subscription_sync.models import SweepReport
from subscription_sync.services.deactivation_sweeper import DeactivationSweeper, get_deactivation_sweeper

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cron", tags=["Cron"], dependencies=[Depends(require_cron)])


@router.get("/deactivations", response_model=SweepReport)
def run_deactivations(sweeper: DeactivationSweeper = Depends(get_deactivation_sweeper)) -> SweepReport:
    """Revoke access for every queued customer whose entitlement has ended."""
    report = sweeper.run()
    logger.info("cron_deactivations_done", ok=report.ok, pending=report.pending, deactivated=report.deactivated)
    return report
