import threading
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from blindmatch.errors import GenerationError, NotificationError
from blindmatch.schemas import GeneratorResult
from blindmatch.services.cache import MemoryCache
from blindmatch.services.conversation import ConversationEngine, UserLockRegistry

NOW = datetime(2025, 6, 14, 18, 0, tzinfo=timezone.utc)
TODAY = date(2025, 6, 14)


class InMemoryStore:
    """Dict-backed stand-in for SqlStore with the same method surface."""

    def __init__(self):
        self._lock = threading.Lock()
        self.users: dict[str, dict] = {}
        self.profiles: dict[str, dict] = {}
        self.preferences: dict[str, dict] = {}
        self.answers: list[dict] = []
        self.embeddings: dict[str, dict] = {}
        self.windows: dict[tuple[str, date], dict] = {}
        self.states: dict[str, dict] = {}
        self.proposals: dict[str, dict] = {}
        self.claims: dict[tuple[str, date], str] = {}
        self.messages: list[dict] = []
        self.audit: list[dict] = []
        self._seq = 0

    # seeding helpers used by tests

    def add_user(
        self,
        phone,
        *,
        name="Sam",
        birth_date=date(1996, 1, 1),
        gender="woman",
        city="Austin",
        accepted_genders=("man",),
        min_age=25,
        max_age=35,
        available=True,
        embedding=None,
        values=(),
        onboarded=True,
        active=True,
        state="active",
    ):
        user = self.create_user(phone, NOW)
        uid = user["id"]
        self.users[uid].update(is_onboarded=onboarded, is_active=active)
        self.profiles[uid] = {"user_id": uid, "display_name": name, "birth_date": birth_date, "gender": gender, "city": city, "bio": None}
        self.preferences[uid] = {
            "user_id": uid,
            "orientation": None,
            "accepted_genders": list(accepted_genders),
            "min_age": min_age,
            "max_age": max_age,
            "max_distance_miles": None,
            "dealbreakers": [],
        }
        self.states[uid] = {"current_state": state, "context": {}}
        if available is not None:
            self.set_availability(uid, TODAY, available, None, NOW)
        if embedding is not None:
            self.replace_embedding(uid, list(embedding), "summary", NOW)
        for text in values:
            self.answers.append({"user_id": uid, "question": "What matters to you?", "answer": text, "category": "values", "seq": self._next()})
        return dict(self.users[uid])

    def _next(self):
        self._seq += 1
        return self._seq

    # store surface

    def ping(self):
        return True

    def get_user(self, user_id):
        user = self.users.get(str(user_id))
        return dict(user) if user else None

    def get_user_by_phone(self, phone):
        for user in self.users.values():
            if user["phone"] == phone:
                return dict(user)
        return None

    def create_user(self, phone, now):
        with self._lock:
            existing = self.get_user_by_phone(phone)
            if existing:
                return existing
            uid = str(uuid.uuid4())
            self.users[uid] = {
                "id": uid,
                "phone": phone,
                "is_active": True,
                "is_onboarded": False,
                "consent_at": now,
                "created_seq": self._next(),
            }
            self.states[uid] = {"current_state": "new", "context": {}}
            return dict(self.users[uid])

    def set_user_active(self, user_id, active, now, refresh_consent=False):
        user = self.users.get(str(user_id))
        if not user:
            return None
        user["is_active"] = active
        if refresh_consent:
            user["consent_at"] = now
        return dict(user)

    def get_profile(self, user_id):
        return self.profiles.get(str(user_id))

    def get_preferences(self, user_id):
        return self.preferences.get(str(user_id))

    def list_answers(self, user_id, category=None):
        rows = [a for a in self.answers if a["user_id"] == str(user_id) and (category is None or a["category"] == category)]
        return [dict(a) for a in sorted(rows, key=lambda a: a["seq"])]

    def replace_embedding(self, user_id, embedding, summary, now):
        self.embeddings[str(user_id)] = {"user_id": str(user_id), "embedding": embedding, "summary": summary, "updated_at": now}

    def fetch_scoring_inputs(self, user_ids):
        out = {}
        for uid in user_ids:
            emb = self.embeddings.get(uid)
            out[uid] = {
                "embedding": emb["embedding"] if emb else None,
                "values_answers": [a["answer"] for a in self.list_answers(uid, "values")],
            }
        return out

    def get_availability(self, user_id, day):
        return self.windows.get((str(user_id), day))

    def create_availability_if_absent(self, user_id, day, now):
        with self._lock:
            key = (str(user_id), day)
            if key in self.windows:
                return False
            self.windows[key] = {"user_id": str(user_id), "day": day, "is_available": False, "preferred_time": None}
            return True

    def set_availability(self, user_id, day, is_available, preferred_time, now):
        self.windows[(str(user_id), day)] = {
            "user_id": str(user_id),
            "day": day,
            "is_available": is_available,
            "preferred_time": preferred_time,
        }

    def _ordered_users(self):
        return sorted(self.users.values(), key=lambda u: u["created_seq"])

    def fetch_candidate_pool(self, day):
        pool = []
        for user in self._ordered_users():
            uid = user["id"]
            window = self.windows.get((uid, day))
            if not (user["is_active"] and user["is_onboarded"] and window and window["is_available"]):
                continue
            if (uid, day) in self.claims:
                continue
            pool.append(
                {
                    "user_id": uid,
                    "phone": user["phone"],
                    "is_active": True,
                    "is_onboarded": True,
                    "is_available": True,
                    "profile": self.profiles.get(uid),
                    "preferences": self.preferences.get(uid),
                }
            )
        return pool

    def list_users_to_invite(self, day):
        return [
            {"id": u["id"], "phone": u["phone"], "display_name": (self.profiles.get(u["id"]) or {}).get("display_name")}
            for u in self._ordered_users()
            if u["is_active"] and u["is_onboarded"] and (u["id"], day) not in self.windows
        ]

    def list_available_users(self, day):
        return [
            {"id": u["id"], "phone": u["phone"]}
            for u in self._ordered_users()
            if u["is_active"] and u["is_onboarded"] and (self.windows.get((u["id"], day)) or {}).get("is_available")
        ]

    def get_conversation_state(self, user_id):
        state = self.states.get(str(user_id))
        return {"current_state": state["current_state"], "context": dict(state["context"])} if state else None

    def save_conversation_state(self, user_id, current_state, context, now):
        self.states[str(user_id)] = {"current_state": current_state, "context": dict(context)}

    def save_conversation_step(
        self,
        user_id,
        current_state,
        context,
        now,
        *,
        profile_updates=None,
        preference_updates=None,
        new_answers=(),
        mark_onboarded=False,
    ):
        uid = str(user_id)
        if profile_updates:
            self.profiles.setdefault(uid, {"user_id": uid}).update(profile_updates)
        if preference_updates:
            self.preferences.setdefault(uid, {"user_id": uid, "accepted_genders": [], "dealbreakers": []}).update(preference_updates)
        for answer in new_answers:
            self.answers.append({"user_id": uid, "category": "general", **answer, "seq": self._next()})
        if mark_onboarded:
            self.users[uid]["is_onboarded"] = True
        self.save_conversation_state(uid, current_state, context, now)

    def create_proposal(self, proposal):
        requester, partner, day = proposal["user1_id"], proposal["user2_id"], proposal["proposed_date"]
        with self._lock:
            if self.claims.get((requester, day), requester) != requester or (partner, day) in self.claims:
                return None
            self.claims[(requester, day)] = requester
            self.claims[(partner, day)] = requester
            row = {**proposal, "seq": self._next()}
            self.proposals[row["id"]] = row
            return dict(row)

    def get_proposal(self, proposal_id):
        row = self.proposals.get(str(proposal_id))
        return dict(row) if row else None

    def list_proposals_for_user(self, user_id):
        rows = [p for p in self.proposals.values() if str(user_id) in (p["user1_id"], p["user2_id"])]
        return [dict(p) for p in sorted(rows, key=lambda p: p["seq"])]

    def has_proposal_on(self, user_id, day):
        return (str(user_id), day) in self.claims

    def get_day_claim(self, user_id, day):
        return self.claims.get((str(user_id), day))

    def record_proposal_response(self, proposal_id, side, response, now):
        with self._lock:
            row = self.proposals.get(str(proposal_id))
            column = f"{side}_response"
            if not row or row["status"] != "proposed" or row["expires_at"] <= now or row[column] != "pending":
                return None
            row[column] = response
            return dict(row)

    def update_proposal_status(self, proposal_id, status, from_status="proposed"):
        with self._lock:
            row = self.proposals.get(str(proposal_id))
            if not row or row["status"] != from_status:
                return False
            row["status"] = status
            return True

    def record_message(self, user_id, direction, body, provider_sid=None, status=None):
        with self._lock:
            self.messages.append(
                {"user_id": user_id, "direction": direction, "body": body, "provider_sid": provider_sid, "status": status}
            )

    def update_message_status(self, provider_sid, status, error_code=None):
        for message in self.messages:
            if message["provider_sid"] == provider_sid:
                message.update(status=status, error_code=error_code)
                return {"id": provider_sid, "user_id": message["user_id"], "status": status}
        return None

    def log_audit_event(self, user_id, event_type, payload=None):
        with self._lock:
            self.audit.append({"user_id": user_id, "event_type": event_type, "payload": payload or {}})


class FakeNotifier:
    def __init__(self, fail_for=()):
        self.sent: list[tuple[str, str]] = []
        self.fail_for = set(fail_for)
        self._lock = threading.Lock()

    def send(self, to, body):
        if to in self.fail_for:
            raise NotificationError("carrier rejected", status_code=400)
        with self._lock:
            self.sent.append((to, body))
            return f"SM{len(self.sent):06d}"

    def bodies_to(self, phone):
        return [body for to, body in self.sent if to == phone]

    def close(self):
        pass


class FakeGenerator:
    """Returns queued results in order; an exception in the queue is raised instead."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[tuple[dict, str]] = []

    def generate(self, context, message):
        self.calls.append((context, message))
        if not self.results:
            raise GenerationError("no scripted reply")
        nxt = self.results.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        if isinstance(nxt, dict):
            return GeneratorResult.model_validate(nxt)
        return nxt

    def close(self):
        pass


class FakeEmbedder:
    def __init__(self, vector=(0.1, 0.2, 0.3)):
        self.vector = list(vector)
        self.texts: list[str] = []

    def embed(self, text):
        self.texts.append(text)
        return list(self.vector)

    def close(self):
        pass


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def make_engine(store, notifier, cache):
    def _make(*results, embedder=None):
        generator = FakeGenerator(*results)
        engine = ConversationEngine(store, cache, generator, notifier, embedder or FakeEmbedder(), UserLockRegistry())
        return engine, generator

    return _make


@pytest.fixture
def later():
    def _later(hours):
        return NOW + timedelta(hours=hours)

    return _later
