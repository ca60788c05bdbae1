from datetime import datetime
from typing import Any

TERMINAL_STATUSES = frozenset({"accepted", "declined", "expired"})
RESPONSES = frozenset({"yes", "no"})


def resolve_status(user1_response: str, user2_response: str) -> str:
    if "no" in (user1_response, user2_response):
        return "declined"
    if user1_response == "yes" and user2_response == "yes":
        return "accepted"
    return "proposed"


def effective_status(proposal: dict[str, Any], now: datetime) -> str:
    """Status as seen at ``now``; the only place lazy expiry is decided."""
    current = proposal["status"]
    if current in TERMINAL_STATUSES:
        return current
    if now >= proposal["expires_at"]:
        return "expired"
    return current


def side_of(proposal: dict[str, Any], user_id: str) -> str | None:
    if str(proposal["user1_id"]) == str(user_id):
        return "user1"
    if str(proposal["user2_id"]) == str(user_id):
        return "user2"
    return None


def apply_response(proposal: dict[str, Any], user_id: str, response: str, now: datetime) -> dict[str, Any]:
    """Return the proposal after ``user_id`` answers ``response``.

    Terminal and expired proposals come back unchanged apart from the lazy
    expiry; a participant's first answer is final.
    """
    if response not in RESPONSES:
        raise ValueError(f"Unsupported response: {response}")
    side = side_of(proposal, user_id)
    if side is None:
        raise ValueError("User is not a participant in this proposal")

    updated = dict(proposal)
    status = effective_status(proposal, now)
    updated["status"] = status
    if status != "proposed":
        return updated
    if updated[f"{side}_response"] != "pending":
        return updated

    updated[f"{side}_response"] = response
    updated["status"] = resolve_status(updated["user1_response"], updated["user2_response"])
    return updated
