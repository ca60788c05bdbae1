import logging
from typing import Any

from fastapi import APIRouter, Depends

from ..deps import get_clients, require_cron
from ..services.clock import local_date, now_utc
from ..services.orchestrator import run_invites, run_proposals

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_cron)])


@router.post("/jobs/invites/run")
def invites_run(clients=Depends(get_clients)) -> dict[str, Any]:
    now = now_utc()
    report = run_invites(clients.store, clients.engine, local_date(now), now)
    logger.info("[jobs] invites day=%s counts=%s", report.day, report.counts())
    return report.as_dict()


@router.post("/jobs/matches/run")
def matches_run(clients=Depends(get_clients)) -> dict[str, Any]:
    now = now_utc()
    report = run_proposals(clients.store, clients.notifier, local_date(now), now)
    logger.info("[jobs] matches day=%s counts=%s", report.day, report.counts())
    return report.as_dict()
