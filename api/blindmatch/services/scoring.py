from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Any

from .candidates import age_in_range, age_on

STOP_WORDS = frozenset(
    {
        "that", "with", "have", "this", "will", "your", "from", "they",
        "know", "want", "been", "good", "much", "some", "time",
    }
)
_PUNCT = re.compile(r"[^\w\s]")


@dataclass
class ScoredCandidate:
    user_id: str
    score: float
    vector_similarity: float
    preference_match: float
    values_overlap: float

    def breakdown(self) -> dict[str, float]:
        return {
            "vector_similarity": self.vector_similarity,
            "preference_match": self.preference_match,
            "values_overlap": self.values_overlap,
        }


def _to_float(value: Any, default: float) -> float:
    try:
        if value is None:
            return float(default)
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def cosine_similarity(a: list[float] | None, b: list[float] | None) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if not magnitude:
        return 0.0
    return max(-1.0, min(1.0, dot / magnitude))


def extract_keywords(text: str) -> set[str]:
    words = _PUNCT.sub("", text.lower()).split()
    return {w for w in words if len(w) > 3 and w not in STOP_WORDS}


def values_overlap(answers_a: list[str], answers_b: list[str]) -> float:
    if not answers_a or not answers_b:
        return 0.0
    keywords_a = extract_keywords(" ".join(answers_a))
    keywords_b = extract_keywords(" ".join(answers_b))
    union = keywords_a | keywords_b
    if not union:
        return 0.0
    return len(keywords_a & keywords_b) / len(union)


def _same_city(profile_a: dict[str, Any] | None, profile_b: dict[str, Any] | None) -> bool:
    city_a = str((profile_a or {}).get("city") or "").strip().casefold()
    city_b = str((profile_b or {}).get("city") or "").strip().casefold()
    return bool(city_a) and city_a == city_b


def preference_match(
    profile_a: dict[str, Any] | None,
    prefs_a: dict[str, Any] | None,
    profile_b: dict[str, Any] | None,
    prefs_b: dict[str, Any] | None,
    today: date,
) -> float:
    a_age = age_on((profile_a or {}).get("birth_date"), today)
    b_age = age_on((profile_b or {}).get("birth_date"), today)
    a_fits_b = age_in_range(a_age, prefs_b)
    b_fits_a = age_in_range(b_age, prefs_a)
    if a_fits_b and b_fits_a:
        age_score = 1.0
    elif a_fits_b or b_fits_a:
        age_score = 0.5
    else:
        age_score = 0.0
    city_score = 1.0 if _same_city(profile_a, profile_b) else 0.0
    return (age_score + city_score) / 2.0


def compute_compatibility(
    a: dict[str, Any],
    b: dict[str, Any],
    today: date,
    cfg: dict[str, Any] | None = None,
) -> ScoredCandidate:
    """Score ``b`` as a date for ``a``.

    Each side is a mapping with ``user_id``, ``profile``, ``preferences``,
    ``embedding`` and ``values_answers``. Missing pieces score zero for the
    component they feed; nothing here raises on absent data.
    """
    cfg = cfg or {}
    vector = cosine_similarity(a.get("embedding"), b.get("embedding"))
    preference = preference_match(a.get("profile"), a.get("preferences"), b.get("profile"), b.get("preferences"), today)
    values = values_overlap(a.get("values_answers") or [], b.get("values_answers") or [])

    total = (
        _to_float(cfg.get("VECTOR_W"), 0.6) * vector
        + _to_float(cfg.get("PREFERENCE_W"), 0.2) * preference
        + _to_float(cfg.get("VALUES_W"), 0.2) * values
    )
    total = max(0.0, min(1.0, total))

    return ScoredCandidate(
        user_id=str(b.get("user_id")),
        score=round(total, 6),
        vector_similarity=round(vector, 6),
        preference_match=round(preference, 6),
        values_overlap=round(values, 6),
    )


def rank_candidates(
    requester: dict[str, Any],
    candidates: list[dict[str, Any]],
    today: date,
    *,
    min_score: float,
    cfg: dict[str, Any] | None = None,
) -> list[ScoredCandidate]:
    scored = [compute_compatibility(requester, c, today, cfg=cfg) for c in candidates]
    kept = [s for s in scored if s.score > min_score]
    # sorted() is stable, so equal scores keep filter order
    return sorted(kept, key=lambda s: -s.score)
