from __future__ import annotations

import json
import logging
import re
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator

import redis
from pydantic import ValidationError

from .. import config
from ..errors import ContextValidationError, GenerationError, StoreUnavailableError
from ..schemas import ConversationContext, GeneratorResult
from .candidates import age_on
from .clock import local_date
from .notify import dispatch
from .proposals import propose_for, respond_to_proposal

logger = logging.getLogger(__name__)

STATES = ("new", "onboarding", "gathering_preferences", "active", "available_tonight")
TRANSITIONS: dict[str, frozenset[str]] = {
    "new": frozenset({"new", "onboarding"}),
    "onboarding": frozenset({"onboarding", "gathering_preferences"}),
    "gathering_preferences": frozenset({"gathering_preferences", "active"}),
    "active": frozenset({"active", "available_tonight"}),
    "available_tonight": frozenset({"available_tonight", "active"}),
}

OPT_OUT_COMMANDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
OPT_IN_COMMANDS = frozenset({"START", "UNSTOP"})
HELP_COMMANDS = frozenset({"HELP", "INFO"})
YES_REPLIES = frozenset({"YES", "Y"})
NO_REPLIES = frozenset({"NO", "N"})

HELP_MESSAGE = (
    f"{config.APP_NAME} SMS Dating\n\n"
    "Text me anytime to chat! I'm Samantha, your matchmaker.\n\n"
    "Commands:\n"
    "STOP - Unsubscribe\n"
    "START - Resubscribe\n"
    "HELP - This message\n\n"
    "I'll learn about you through conversation and suggest same-day dates with compatible people. "
    "Conversations are private and numbers stay masked."
)
APOLOGY_MESSAGE = "Sorry, I'm having a moment! Can you try texting me again?"
AVAILABILITY_QUESTION = (
    "Hey {name}! Hope you're having a great day. Are you free for a date tonight? "
    "Reply YES if you're available or NO if not tonight."
)


def normalize_phone(raw: str) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if not digits:
        raise ValueError("Sender phone number is empty")
    return f"+{digits}"


def normalize_command(body: str) -> str:
    return re.sub(r"[^\w\s]", "", (body or "").strip().upper()).strip()


def resolve_next_state(current: str, requested: str) -> str:
    if current not in TRANSITIONS:
        logger.warning("[conversation] unknown stored state=%s, resetting to new", current)
        current = "new"
    if requested in TRANSITIONS[current]:
        return requested
    logger.warning("[conversation] refused transition %s -> %s", current, requested)
    return current


def _bounded_extra(key: str, value: Any, max_chars: int) -> bool:
    try:
        encoded = json.dumps(value)
    except (TypeError, ValueError):
        logger.warning("[conversation] dropping non-JSON context key=%s", key)
        return False
    if len(encoded) > max_chars:
        logger.warning("[conversation] dropping oversized context key=%s size=%s", key, len(encoded))
        return False
    return True


def merge_context(
    current: ConversationContext,
    delta: dict[str, Any],
    *,
    max_extra_keys: int = config.CONTEXT_EXTRA_KEYS_MAX,
    max_value_chars: int = config.CONTEXT_EXTRA_VALUE_MAX_CHARS,
) -> ConversationContext:
    """Shallow key-wise merge: new keys added, present keys replaced, absent keys kept."""
    if not isinstance(delta, dict):
        raise ContextValidationError("Context updates must be an object")
    named_keys = ConversationContext.named_keys()
    named = current.model_dump(exclude={"extras"})
    extras = dict(current.extras)

    for key, value in delta.items():
        if key == "extras":
            raise ContextValidationError("'extras' is a reserved context key")
        if key in named_keys:
            named[key] = value
            continue
        if not _bounded_extra(key, value, max_value_chars):
            continue
        if key not in extras and len(extras) >= max_extra_keys:
            logger.warning("[conversation] context extras full, dropping key=%s", key)
            continue
        extras[key] = value

    try:
        return ConversationContext.model_validate({**named, "extras": extras})
    except ValidationError as exc:
        raise ContextValidationError(f"Invalid context update: {exc.error_count()} errors") from exc


def build_generator_context(
    current_state: str,
    context: ConversationContext,
    profile: dict[str, Any] | None,
    prefs: dict[str, Any] | None,
    answers: list[dict[str, Any]],
    today: date,
) -> dict[str, Any]:
    return {
        "user_state": current_state,
        "today": today.isoformat(),
        "context": context.as_mapping(),
        "has_profile": bool(profile),
        "profile_data": {
            "display_name": profile.get("display_name"),
            "age": age_on(profile.get("birth_date"), today),
            "gender": profile.get("gender"),
            "city": profile.get("city"),
            "bio": profile.get("bio"),
        }
        if profile
        else None,
        "has_preferences": bool(prefs),
        "preferences_data": {
            "orientation": prefs.get("orientation"),
            "accepted_genders": prefs.get("accepted_genders"),
            "age_range": [prefs.get("min_age"), prefs.get("max_age")],
            "max_distance_miles": prefs.get("max_distance_miles"),
            "dealbreakers": prefs.get("dealbreakers"),
        }
        if prefs
        else None,
        "answers_count": len(answers),
        "recent_answers": [
            {"question": a["question"], "answer": a["answer"], "category": a["category"]}
            for a in answers[-config.RECENT_ANSWERS_IN_CONTEXT:]
        ],
    }


def build_profile_summary(
    profile: dict[str, Any] | None,
    prefs: dict[str, Any] | None,
    answers: list[dict[str, Any]],
    today: date,
) -> str:
    profile = profile or {}
    prefs = prefs or {}
    age = age_on(profile.get("birth_date"), today)
    genders = ", ".join(prefs.get("accepted_genders") or []) or "unknown"
    dealbreakers = ", ".join(prefs.get("dealbreakers") or []) or "none specified"
    lines = [
        f"Profile: {profile.get('display_name') or 'User'}, age {age if age is not None else 'unknown'}, "
        f"from {profile.get('city') or 'unknown location'}.",
        f"Looking for: {prefs.get('orientation') or 'unknown'} relationships with {genders}.",
        f"Age preference: {prefs.get('min_age') or 'unknown'}-{prefs.get('max_age') or 'unknown'}.",
        "",
        "Values and interests:",
    ]
    lines.extend(f"{a['question']}: {a['answer']}" for a in answers)
    lines.extend(["", f"Dealbreakers: {dealbreakers}"])
    return "\n".join(lines)


class UserLockRegistry:
    """One lock per user so steps for the same user never interleave."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(str(user_id), threading.Lock())
        with lock:
            yield


class ConversationEngine:
    def __init__(
        self,
        store,
        cache,
        generator,
        notifier,
        embedder=None,
        locks: UserLockRegistry | None = None,
        *,
        cache_ttl_seconds: int = config.CONVERSATION_CACHE_TTL_SECONDS,
        timezone_name: str = config.MATCH_TIMEZONE,
    ) -> None:
        self.store = store
        self.cache = cache
        self.generator = generator
        self.notifier = notifier
        self.embedder = embedder
        self.locks = locks or UserLockRegistry()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timezone_name = timezone_name

    # state cache

    @staticmethod
    def _cache_key(user_id: str) -> str:
        return f"conversation:{user_id}"

    def _cache_put(self, user_id: str, state: dict[str, Any]) -> None:
        try:
            self.cache.set_json(self._cache_key(user_id), state, self.cache_ttl_seconds)
        except redis.RedisError as exc:
            logger.warning("[conversation] cache write failed user_id=%s error=%s", user_id, exc)

    def load_state(self, user_id: str) -> dict[str, Any]:
        try:
            cached = self.cache.get_json(self._cache_key(user_id))
        except redis.RedisError as exc:
            logger.warning("[conversation] cache read failed user_id=%s error=%s", user_id, exc)
            cached = None
        if isinstance(cached, dict) and cached.get("current_state") in STATES and isinstance(cached.get("context"), dict):
            return cached
        stored = self.store.get_conversation_state(user_id) or {"current_state": "new", "context": {}}
        self._cache_put(user_id, stored)
        return stored

    def _persist_state(self, user_id: str, current_state: str, context: ConversationContext, now: datetime) -> None:
        self.store.save_conversation_state(user_id, current_state, context.as_mapping(), now)
        self._cache_put(user_id, {"current_state": current_state, "context": context.as_mapping()})

    # inbound

    def handle_inbound(self, phone: str, body: str, now: datetime, message_sid: str | None = None) -> str:
        command = normalize_command(body)
        if command in OPT_OUT_COMMANDS:
            return self._opt_out(phone, now)
        if command in OPT_IN_COMMANDS:
            return self._opt_in(phone, now)
        if command in HELP_COMMANDS:
            user = self.store.get_user_by_phone(phone)
            dispatch(self.store, self.notifier, {"id": (user or {}).get("id"), "phone": phone}, HELP_MESSAGE)
            return "help"

        user = self.store.get_user_by_phone(phone) or self.store.create_user(phone, now)
        user_id = str(user["id"])
        self.store.record_message(user_id, "inbound", body, provider_sid=message_sid, status="received")
        if not user.get("is_active"):
            logger.info("[conversation] ignoring message from inactive user_id=%s", user_id)
            return "inactive"
        self.store.log_audit_event(user_id, "sms_received", {"message_sid": message_sid, "content_length": len(body or "")})

        with self.locks.hold(user_id):
            try:
                state = self.load_state(user_id)
                if state["current_state"] != "available_tonight" and command in YES_REPLIES | NO_REPLIES:
                    response = "yes" if command in YES_REPLIES else "no"
                    if respond_to_proposal(self.store, self.notifier, user, response, now) is not None:
                        return "proposal_response"
                return self.step(user, body, state, now)
            except StoreUnavailableError:
                raise
            except Exception:
                logger.exception("[conversation] step crashed user_id=%s", user_id)
                dispatch(self.store, self.notifier, user, APOLOGY_MESSAGE)
                return "failed"

    def _opt_out(self, phone: str, now: datetime) -> str:
        user = self.store.get_user_by_phone(phone)
        if user:
            user_id = str(user["id"])
            self.store.set_user_active(user_id, False, now)
            self.store.log_audit_event(user_id, "opt_out", {"method": "sms_stop"})
            logger.info("[conversation] opt-out user_id=%s", user_id)
        return "opted_out"

    def _opt_in(self, phone: str, now: datetime) -> str:
        user = self.store.get_user_by_phone(phone)
        if user:
            user_id = str(user["id"])
            self.store.set_user_active(user_id, True, now, refresh_consent=True)
            self.store.log_audit_event(user_id, "opt_in", {"method": "sms_start"})
            logger.info("[conversation] opt-in user_id=%s", user_id)
        else:
            self.store.create_user(phone, now)
        return "opted_in"

    def step(self, user: dict[str, Any], body: str, state: dict[str, Any], now: datetime) -> str:
        """Run one conversational turn. Caller holds the user's lock."""
        user_id = str(user["id"])
        today = local_date(now, self.timezone_name)
        current_state = state["current_state"]

        try:
            context = ConversationContext.from_mapping(state.get("context"))
            profile = self.store.get_profile(user_id)
            prefs = self.store.get_preferences(user_id)
            answers = self.store.list_answers(user_id)
            payload = build_generator_context(current_state, context, profile, prefs, answers, today)
            result: GeneratorResult = self.generator.generate(payload, body)
            merged = merge_context(context, result.context_updates)
        except (GenerationError, ValidationError) as exc:
            logger.warning("[conversation] generation failed user_id=%s error=%s", user_id, exc)
            dispatch(self.store, self.notifier, user, APOLOGY_MESSAGE)
            return "failed"

        next_state = resolve_next_state(current_state, result.next_state)
        self.store.save_conversation_step(
            user_id,
            next_state,
            merged.as_mapping(),
            now,
            profile_updates=result.profile_updates.model_dump(exclude_none=True) if result.profile_updates else None,
            preference_updates=result.preference_updates.model_dump(exclude_none=True) if result.preference_updates else None,
            new_answers=[a.model_dump() for a in result.new_answers],
            mark_onboarded=next_state == "active" and not user.get("is_onboarded"),
        )
        self._cache_put(user_id, {"current_state": next_state, "context": merged.as_mapping()})
        logger.info("[conversation] step user_id=%s %s -> %s actions=%s", user_id, current_state, next_state, result.actions)

        dispatch(self.store, self.notifier, user, result.message)
        for action in result.actions:
            self._run_action(action, user_id, merged, today, now)
        return "processed"

    # actions

    def _run_action(self, action: str, user_id: str, context: ConversationContext, today: date, now: datetime) -> None:
        handlers = {
            "recompute_embedding": self.recompute_embedding,
            "check_availability": self.check_availability,
            "find_matches": self.find_matches,
        }
        try:
            handlers[action](user_id, context, today, now)
        except StoreUnavailableError:
            raise
        except Exception:
            logger.exception("[conversation] action failed action=%s user_id=%s", action, user_id)

    def recompute_embedding(self, user_id: str, context: ConversationContext, today: date, now: datetime) -> None:
        if self.embedder is None:
            logger.warning("[conversation] no embedder configured, skipping user_id=%s", user_id)
            return
        answers = self.store.list_answers(user_id)
        if not answers:
            return
        summary = build_profile_summary(self.store.get_profile(user_id), self.store.get_preferences(user_id), answers, today)
        self.store.replace_embedding(user_id, self.embedder.embed(summary), summary, now)

    def check_availability(self, user_id: str, context: ConversationContext, today: date, now: datetime) -> None:
        if context.available_tonight is None:
            return
        self.store.set_availability(user_id, today, context.available_tonight, context.preferred_time, now)

    def find_matches(self, user_id: str, context: ConversationContext, today: date, now: datetime) -> None:
        window = self.store.get_availability(user_id, today)
        if not window or not window.get("is_available"):
            logger.info("[conversation] find_matches skipped, user not available user_id=%s", user_id)
            return
        propose_for(self.store, self.notifier, user_id, today, now)

    # batch entry point

    def ask_availability(self, user: dict[str, Any], today: date, now: datetime) -> str:
        user_id = str(user["id"])
        with self.locks.hold(user_id):
            if not self.store.create_availability_if_absent(user_id, today, now):
                return "skipped"
            state = self.load_state(user_id)
            context = merge_context(
                ConversationContext.from_mapping(state.get("context")),
                {
                    "availability_asked_on": today.isoformat(),
                    "expecting_availability_response": True,
                    "available_tonight": None,
                    "preferred_time": None,
                },
            )
            next_state = resolve_next_state(state["current_state"], "available_tonight")
            self._persist_state(user_id, next_state, context, now)
        dispatch(self.store, self.notifier, user, AVAILABILITY_QUESTION.format(name=user.get("display_name") or "there"))
        return "asked"
