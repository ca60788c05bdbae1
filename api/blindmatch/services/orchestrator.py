from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Callable

from .. import config
from ..errors import StoreUnavailableError
from .proposals import propose_for

logger = logging.getLogger(__name__)


@dataclass
class BatchItemResult:
    user_id: str
    status: str
    detail: str | None = None
    proposal_ids: list[str] = field(default_factory=list)


@dataclass
class BatchReport:
    job: str
    day: str
    results: list[BatchItemResult] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for r in self.results:
            out[r.status] = out.get(r.status, 0) + 1
        return out

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "day": self.day,
            "processed": len(self.results),
            "counts": self.counts(),
            "results": [asdict(r) for r in self.results],
        }


def _run_each(
    users: list[dict[str, Any]],
    work: Callable[[dict[str, Any]], BatchItemResult],
    max_workers: int,
) -> list[BatchItemResult]:
    """Run ``work`` for every user. One user's failure never stops the others."""

    def guarded(user: dict[str, Any]) -> BatchItemResult:
        try:
            return work(user)
        except StoreUnavailableError:
            raise
        except Exception as exc:
            logger.exception("[orchestrator] user failed user_id=%s", user.get("id"))
            return BatchItemResult(user_id=str(user.get("id")), status="error", detail=str(exc))

    if not users:
        return []
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        # map() yields in submission order and re-raises the first fatal error
        return list(pool.map(guarded, users))


def run_invites(store, engine, today: date, now: datetime, *, max_workers: int = config.BATCH_MAX_WORKERS) -> BatchReport:
    """Ask every active onboarded user without a window for ``today`` whether they are free tonight."""
    users = store.list_users_to_invite(today)
    logger.info("[orchestrator] invite run day=%s users=%s", today, len(users))

    def invite(user: dict[str, Any]) -> BatchItemResult:
        outcome = engine.ask_availability(user, today, now)
        if outcome == "asked":
            return BatchItemResult(user_id=str(user["id"]), status="success")
        return BatchItemResult(user_id=str(user["id"]), status="skipped", detail="already_asked_today")

    report = BatchReport(job="invites", day=today.isoformat(), results=_run_each(users, invite, max_workers))
    store.log_audit_event(None, "invite_run", {"day": today.isoformat(), "counts": report.counts()})
    return report


def run_proposals(
    store,
    notifier,
    today: date,
    now: datetime,
    *,
    max_workers: int = config.BATCH_MAX_WORKERS,
    cfg: dict[str, Any] | None = None,
) -> BatchReport:
    """Generate proposals for every user who said they are available ``today``."""
    users = store.list_available_users(today)
    logger.info("[orchestrator] proposal run day=%s users=%s", today, len(users))

    def propose(user: dict[str, Any]) -> BatchItemResult:
        outcome = propose_for(store, notifier, str(user["id"]), today, now, cfg=cfg)
        status = "skipped" if outcome.status == "skipped" else "success"
        detail = outcome.reason or (outcome.status if outcome.status != "proposed" else None)
        return BatchItemResult(user_id=outcome.user_id, status=status, detail=detail, proposal_ids=outcome.proposal_ids)

    report = BatchReport(job="matches", day=today.isoformat(), results=_run_each(users, propose, max_workers))
    store.log_audit_event(None, "match_run", {"day": today.isoformat(), "counts": report.counts()})
    return report
