from __future__ import annotations

from datetime import date
from typing import Any

ANY_GENDER = "any"


def _to_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def age_on(birth_date: Any, today: date) -> int | None:
    born = _to_date(birth_date)
    if born is None:
        return None
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def normalize_gender(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    return v or None


def accepted_genders(prefs: dict[str, Any] | None) -> set[str]:
    values = (prefs or {}).get("accepted_genders")
    if not isinstance(values, (list, tuple, set)):
        return set()
    return {g for g in (normalize_gender(v) for v in values) if g}


def age_in_range(age: int | None, prefs: dict[str, Any] | None) -> bool:
    if age is None or not prefs:
        return False
    lo, hi = prefs.get("min_age"), prefs.get("max_age")
    if lo is None or hi is None:
        return False
    return int(lo) <= age <= int(hi)


def _accepts(prefs: dict[str, Any] | None, gender: str | None) -> bool:
    if gender is None:
        return False
    accepted = accepted_genders(prefs)
    return ANY_GENDER in accepted or gender in accepted


def mutually_eligible(
    a_profile: dict[str, Any] | None,
    a_prefs: dict[str, Any] | None,
    b_profile: dict[str, Any] | None,
    b_prefs: dict[str, Any] | None,
    today: date,
) -> bool:
    if not a_profile or not a_prefs or not b_profile or not b_prefs:
        return False
    a_age = age_on(a_profile.get("birth_date"), today)
    b_age = age_on(b_profile.get("birth_date"), today)
    if not (age_in_range(b_age, a_prefs) and age_in_range(a_age, b_prefs)):
        return False
    a_gender = normalize_gender(a_profile.get("gender"))
    b_gender = normalize_gender(b_profile.get("gender"))
    return _accepts(a_prefs, b_gender) and _accepts(b_prefs, a_gender)


def _is_matchable(entry: dict[str, Any]) -> bool:
    return bool(entry.get("is_active")) and bool(entry.get("is_onboarded")) and bool(entry.get("is_available"))


def filter_candidates(
    requester_id: str,
    profile: dict[str, Any] | None,
    prefs: dict[str, Any] | None,
    pool: list[dict[str, Any]],
    today: date,
) -> list[dict[str, Any]]:
    """Return pool entries (in pool order) that are matchable today and mutually eligible with the requester."""
    if not profile or not prefs:
        return []
    out: list[dict[str, Any]] = []
    for entry in pool:
        if str(entry.get("user_id")) == str(requester_id):
            continue
        if not _is_matchable(entry):
            continue
        if mutually_eligible(profile, prefs, entry.get("profile"), entry.get("preferences"), today):
            out.append(entry)
    return out
