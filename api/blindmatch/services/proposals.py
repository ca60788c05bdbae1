from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from .. import config
from .candidates import filter_candidates
from .notify import dispatch
from .scoring import ScoredCandidate, rank_candidates
from .state_machine import apply_response, effective_status, resolve_status, side_of

logger = logging.getLogger(__name__)

STILL_SEARCHING_MESSAGE = (
    "I'm still looking for great matches for you tonight! I'll keep searching and let you know when I find someone special."
)
WAITING_ON_OTHER_MESSAGE = "Love it! I'll let you know as soon as they reply."
DECLINED_ACK_MESSAGE = "No problem at all. I'll keep an eye out for someone else."
PARTNER_DECLINED_MESSAGE = "Your match can't make it tonight. Don't worry, I'll keep looking for you!"
EXPIRED_MESSAGE = "That proposal has expired, but I'll keep looking for you."


@dataclass
class ProposalOutcome:
    user_id: str
    status: str
    proposal_ids: list[str] = field(default_factory=list)
    reason: str | None = None


def build_proposal(
    user1_id: str,
    scored: ScoredCandidate,
    day: date,
    now: datetime,
    *,
    ttl_hours: int = config.PROPOSAL_TTL_HOURS,
    proposed_time: str = config.PROPOSAL_DEFAULT_TIME,
    activity: str = config.PROPOSAL_DEFAULT_ACTIVITY,
    area: str = config.PROPOSAL_DEFAULT_AREA,
) -> dict[str, Any]:
    if str(user1_id) == str(scored.user_id):
        raise ValueError("A proposal needs two distinct participants")
    return {
        "id": str(uuid.uuid4()),
        "user1_id": str(user1_id),
        "user2_id": str(scored.user_id),
        "status": "proposed",
        "score": scored.score,
        "score_breakdown": scored.breakdown(),
        "proposed_date": day,
        "proposed_time": proposed_time,
        "proposed_activity": activity,
        "proposed_area": area,
        "user1_response": "pending",
        "user2_response": "pending",
        "created_at": now,
        "expires_at": now + timedelta(hours=ttl_hours),
    }


def proposal_message(display_name: str | None, proposal: dict[str, Any], ttl_hours: int = config.PROPOSAL_TTL_HOURS) -> str:
    return (
        f"Hey {display_name or 'there'}! I found someone who might be perfect for you tonight!\n\n"
        f"Interested in {proposal['proposed_activity']} around {proposal['proposed_area']} at {proposal['proposed_time']}?\n\n"
        f"Reply YES if you're interested, or NO if not tonight. You have {ttl_hours} hours to decide!"
    )


def accepted_message(proposal: dict[str, Any]) -> str:
    return (
        f"It's a date! {proposal['proposed_activity']} around {proposal['proposed_area']} "
        f"at {proposal['proposed_time']} tonight. Have fun!"
    )


def _with_effective_status(store, proposal: dict[str, Any], now: datetime) -> dict[str, Any]:
    status = effective_status(proposal, now)
    if status == "expired" and proposal["status"] == "proposed":
        store.update_proposal_status(proposal["id"], "expired")
    return {**proposal, "status": status}


def read_proposal(store, proposal_id: str, now: datetime) -> dict[str, Any] | None:
    proposal = store.get_proposal(proposal_id)
    if not proposal:
        return None
    return _with_effective_status(store, proposal, now)


def open_proposals_for(store, user_id: str, now: datetime) -> list[dict[str, Any]]:
    """Proposals still waiting on ``user_id``, oldest first."""
    out = []
    for proposal in store.list_proposals_for_user(user_id):
        current = _with_effective_status(store, proposal, now)
        side = side_of(current, user_id)
        if current["status"] == "proposed" and side and current[f"{side}_response"] == "pending":
            out.append(current)
    return out


def _claimed_by_other(store, user_id: str, day: date) -> bool:
    return store.get_day_claim(user_id, day) not in (None, user_id)


def propose_for(
    store,
    notifier,
    user_id: str,
    today: date,
    now: datetime,
    *,
    top_n: int = config.PROPOSALS_PER_USER,
    min_score: float = config.MIN_MATCH_SCORE,
    cfg: dict[str, Any] | None = None,
) -> ProposalOutcome:
    if store.has_proposal_on(user_id, today):
        return ProposalOutcome(user_id=user_id, status="skipped", reason="already_proposed_today")
    user = store.get_user(user_id)
    if not user or not user.get("is_active"):
        return ProposalOutcome(user_id=user_id, status="skipped", reason="inactive")

    profile = store.get_profile(user_id)
    prefs = store.get_preferences(user_id)
    candidates = filter_candidates(user_id, profile, prefs, store.fetch_candidate_pool(today), today)

    ranked: list[ScoredCandidate] = []
    if candidates:
        inputs = store.fetch_scoring_inputs([user_id] + [c["user_id"] for c in candidates])
        requester = {"user_id": user_id, "profile": profile, "preferences": prefs, **inputs.get(user_id, {})}
        enriched = [{**c, **inputs.get(c["user_id"], {})} for c in candidates]
        ranked = rank_candidates(requester, enriched, today, min_score=min_score, cfg=cfg or config.DEFAULT_SCORING_CONFIG)

    by_id = {c["user_id"]: c for c in candidates}
    created: list[str] = []
    for scored in ranked:
        if len(created) >= top_n:
            break
        proposal = store.create_proposal(build_proposal(user_id, scored, today, now))
        if proposal is None:
            if _claimed_by_other(store, user_id, today):
                break
            logger.info("[proposals] candidate taken user_id=%s candidate=%s", user_id, scored.user_id)
            continue
        created.append(str(proposal["id"]))
        logger.info(
            "[proposals] created id=%s user1=%s user2=%s score=%s",
            proposal["id"],
            user_id,
            scored.user_id,
            scored.score,
        )
        other = by_id[scored.user_id]
        dispatch(store, notifier, user, proposal_message((profile or {}).get("display_name"), proposal))
        dispatch(
            store,
            notifier,
            {"id": other["user_id"], "phone": other["phone"]},
            proposal_message((other.get("profile") or {}).get("display_name"), proposal),
        )

    if created:
        return ProposalOutcome(user_id=user_id, status="proposed", proposal_ids=created)
    if _claimed_by_other(store, user_id, today):
        # another run paired this user while we were ranking
        return ProposalOutcome(user_id=user_id, status="skipped", reason="already_proposed_today")
    logger.info("[proposals] no viable candidates user_id=%s candidates=%s", user_id, len(candidates))
    dispatch(store, notifier, user, STILL_SEARCHING_MESSAGE)
    return ProposalOutcome(user_id=user_id, status="no_candidates")


def respond_to_proposal(store, notifier, user: dict[str, Any], response: str, now: datetime) -> dict[str, Any] | None:
    """Apply a yes/no from ``user`` to their oldest open proposal. Returns None when nothing is open."""
    user_id = str(user["id"])
    pending = open_proposals_for(store, user_id, now)
    if not pending:
        return None
    proposal = pending[0]
    side = side_of(proposal, user_id)

    expected = apply_response(proposal, user_id, response, now)
    if expected[f"{side}_response"] == proposal[f"{side}_response"]:
        return expected

    row = store.record_proposal_response(proposal["id"], side, response, now)
    if row is None:
        # lost a race with expiry or a duplicate answer
        current = read_proposal(store, proposal["id"], now)
        if current and current["status"] == "expired":
            dispatch(store, notifier, user, EXPIRED_MESSAGE)
        return current

    status = resolve_status(row["user1_response"], row["user2_response"])
    if status != "proposed" and store.update_proposal_status(row["id"], status):
        row["status"] = status
    store.log_audit_event(user_id, "proposal_response", {"proposal_id": row["id"], "response": response, "status": row["status"]})
    logger.info("[proposals] response id=%s user_id=%s response=%s status=%s", row["id"], user_id, response, row["status"])

    other_id = row["user2_id"] if side == "user1" else row["user1_id"]
    other = store.get_user(other_id)
    if row["status"] == "accepted":
        dispatch(store, notifier, user, accepted_message(row))
        if other:
            dispatch(store, notifier, other, accepted_message(row))
    elif row["status"] == "declined":
        if response == "no":
            dispatch(store, notifier, user, DECLINED_ACK_MESSAGE)
            if other:
                dispatch(store, notifier, other, PARTNER_DECLINED_MESSAGE)
        else:
            dispatch(store, notifier, user, PARTNER_DECLINED_MESSAGE)
    else:
        dispatch(store, notifier, user, WAITING_ON_OTHER_MESSAGE)
    return row
