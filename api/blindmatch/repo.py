import json
import uuid
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import text

from .database import session_scope


def _row(row) -> dict[str, Any] | None:
    if not row:
        return None
    out = dict(row)
    for key, value in out.items():
        if isinstance(value, uuid.UUID):
            out[key] = str(value)
    return out


def _rows(rows) -> list[dict[str, Any]]:
    return [_row(r) for r in rows]


def _json_or_none(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


class SqlStore:
    """Identity store backed by Postgres through SQLAlchemy sessions."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def ping(self) -> bool:
        with session_scope(self._session_factory) as db:
            db.execute(text("SELECT 1"))
        return True

    # users

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT * FROM user_account WHERE id=CAST(:id AS uuid)"),
                {"id": user_id},
            ).mappings().first()
        return _row(row)

    def get_user_by_phone(self, phone: str) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT * FROM user_account WHERE phone=:phone"),
                {"phone": phone},
            ).mappings().first()
        return _row(row)

    def create_user(self, phone: str, now: datetime) -> dict[str, Any]:
        user_id = str(uuid.uuid4())
        with session_scope(self._session_factory) as db:
            inserted = db.execute(
                text(
                    """
                    INSERT INTO user_account (id, phone, is_active, is_onboarded, consent_at, created_at, updated_at)
                    VALUES (:id, :phone, TRUE, FALSE, :now, :now, :now)
                    ON CONFLICT (phone) DO NOTHING
                    RETURNING id
                    """
                ),
                {"id": user_id, "phone": phone, "now": now},
            ).first()
            if inserted:
                db.execute(
                    text(
                        """
                        INSERT INTO conversation_state (user_id, current_state, context, updated_at)
                        VALUES (:user_id, 'new', '{}'::jsonb, :now)
                        ON CONFLICT (user_id) DO NOTHING
                        """
                    ),
                    {"user_id": user_id, "now": now},
                )
            db.commit()
        return self.get_user_by_phone(phone)

    def set_user_active(self, user_id: str, active: bool, now: datetime, refresh_consent: bool = False) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text(
                    """
                    UPDATE user_account
                    SET is_active=:active,
                        consent_at=CASE WHEN :refresh_consent THEN :now ELSE consent_at END,
                        updated_at=:now
                    WHERE id=CAST(:id AS uuid)
                    RETURNING *
                    """
                ),
                {"id": user_id, "active": active, "refresh_consent": refresh_consent, "now": now},
            ).mappings().first()
            db.commit()
        return _row(row)

    # profile data

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT * FROM user_profile WHERE user_id=CAST(:id AS uuid)"),
                {"id": user_id},
            ).mappings().first()
        return _row(row)

    def get_preferences(self, user_id: str) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT * FROM user_preferences WHERE user_id=CAST(:id AS uuid)"),
                {"id": user_id},
            ).mappings().first()
        return _row(row)

    def list_answers(self, user_id: str, category: str | None = None) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                text(
                    """
                    SELECT question, answer, category, created_at
                    FROM user_answer
                    WHERE user_id=CAST(:id AS uuid)
                      AND (CAST(:category AS text) IS NULL OR category=:category)
                    ORDER BY created_at ASC, id ASC
                    """
                ),
                {"id": user_id, "category": category},
            ).mappings().all()
        return _rows(rows)

    def replace_embedding(self, user_id: str, embedding: list[float], summary: str, now: datetime) -> None:
        with session_scope(self._session_factory) as db:
            db.execute(
                text(
                    """
                    INSERT INTO user_embedding (user_id, embedding, summary, updated_at)
                    VALUES (CAST(:id AS uuid), CAST(:embedding AS jsonb), :summary, :now)
                    ON CONFLICT (user_id)
                    DO UPDATE SET embedding=EXCLUDED.embedding, summary=EXCLUDED.summary, updated_at=EXCLUDED.updated_at
                    """
                ),
                {"id": user_id, "embedding": json.dumps(embedding), "summary": summary, "now": now},
            )
            db.commit()

    def fetch_scoring_inputs(self, user_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not user_ids:
            return {}
        out: dict[str, dict[str, Any]] = {uid: {"embedding": None, "values_answers": []} for uid in user_ids}
        with session_scope(self._session_factory) as db:
            vectors = db.execute(
                text("SELECT user_id, embedding FROM user_embedding WHERE CAST(user_id AS text) = ANY(:ids)"),
                {"ids": list(user_ids)},
            ).mappings().all()
            answers = db.execute(
                text(
                    """
                    SELECT user_id, answer
                    FROM user_answer
                    WHERE CAST(user_id AS text) = ANY(:ids) AND category='values'
                    ORDER BY created_at ASC, id ASC
                    """
                ),
                {"ids": list(user_ids)},
            ).mappings().all()
        for r in vectors:
            embedding = r["embedding"]
            out[str(r["user_id"])]["embedding"] = embedding if isinstance(embedding, list) else None
        for r in answers:
            out[str(r["user_id"])]["values_answers"].append(str(r["answer"]))
        return out

    # availability

    def get_availability(self, user_id: str, day: date) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT * FROM availability_window WHERE user_id=CAST(:id AS uuid) AND day=:day"),
                {"id": user_id, "day": day},
            ).mappings().first()
        return _row(row)

    def create_availability_if_absent(self, user_id: str, day: date, now: datetime) -> bool:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text(
                    """
                    INSERT INTO availability_window (id, user_id, day, is_available, created_at, updated_at)
                    VALUES (:wid, CAST(:id AS uuid), :day, FALSE, :now, :now)
                    ON CONFLICT (user_id, day) DO NOTHING
                    RETURNING id
                    """
                ),
                {"wid": str(uuid.uuid4()), "id": user_id, "day": day, "now": now},
            ).first()
            db.commit()
        return row is not None

    def set_availability(self, user_id: str, day: date, is_available: bool, preferred_time: str | None, now: datetime) -> None:
        with session_scope(self._session_factory) as db:
            db.execute(
                text(
                    """
                    INSERT INTO availability_window (id, user_id, day, is_available, preferred_time, created_at, updated_at)
                    VALUES (:wid, CAST(:id AS uuid), :day, :is_available, :preferred_time, :now, :now)
                    ON CONFLICT (user_id, day)
                    DO UPDATE SET is_available=EXCLUDED.is_available,
                                  preferred_time=EXCLUDED.preferred_time,
                                  updated_at=EXCLUDED.updated_at
                    """
                ),
                {
                    "wid": str(uuid.uuid4()),
                    "id": user_id,
                    "day": day,
                    "is_available": is_available,
                    "preferred_time": preferred_time,
                    "now": now,
                },
            )
            db.commit()

    def fetch_candidate_pool(self, day: date) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                text(
                    """
                    SELECT
                      ua.id AS user_id,
                      ua.phone,
                      ua.is_active,
                      ua.is_onboarded,
                      aw.is_available,
                      up.display_name, up.birth_date, up.gender, up.city,
                      pref.user_id AS pref_user_id,
                      pref.accepted_genders, pref.min_age, pref.max_age
                    FROM user_account ua
                    JOIN availability_window aw
                      ON aw.user_id = ua.id AND aw.day = :day AND aw.is_available = TRUE
                    LEFT JOIN user_profile up ON up.user_id = ua.id
                    LEFT JOIN user_preferences pref ON pref.user_id = ua.id
                    WHERE ua.is_active = TRUE
                      AND ua.is_onboarded = TRUE
                      AND NOT EXISTS (
                        SELECT 1 FROM proposal_claim pc WHERE pc.user_id = ua.id AND pc.day = :day
                      )
                    ORDER BY ua.created_at ASC, ua.id ASC
                    """
                ),
                {"day": day},
            ).mappings().all()

        pool = []
        for r in rows:
            has_profile = r["display_name"] is not None or r["birth_date"] is not None or r["gender"] is not None
            pool.append(
                {
                    "user_id": str(r["user_id"]),
                    "phone": r["phone"],
                    "is_active": r["is_active"],
                    "is_onboarded": r["is_onboarded"],
                    "is_available": r["is_available"],
                    "profile": {
                        "display_name": r["display_name"],
                        "birth_date": r["birth_date"],
                        "gender": r["gender"],
                        "city": r["city"],
                    }
                    if has_profile
                    else None,
                    "preferences": {
                        "accepted_genders": r["accepted_genders"] if isinstance(r["accepted_genders"], list) else [],
                        "min_age": r["min_age"],
                        "max_age": r["max_age"],
                    }
                    if r["pref_user_id"] is not None
                    else None,
                }
            )
        return pool

    def list_users_to_invite(self, day: date) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                text(
                    """
                    SELECT ua.id, ua.phone, up.display_name
                    FROM user_account ua
                    LEFT JOIN user_profile up ON up.user_id = ua.id
                    WHERE ua.is_active = TRUE
                      AND ua.is_onboarded = TRUE
                      AND NOT EXISTS (
                        SELECT 1 FROM availability_window aw WHERE aw.user_id = ua.id AND aw.day = :day
                      )
                    ORDER BY ua.created_at ASC, ua.id ASC
                    """
                ),
                {"day": day},
            ).mappings().all()
        return _rows(rows)

    def list_available_users(self, day: date) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                text(
                    """
                    SELECT ua.id, ua.phone
                    FROM user_account ua
                    JOIN availability_window aw ON aw.user_id = ua.id AND aw.day = :day AND aw.is_available = TRUE
                    WHERE ua.is_active = TRUE AND ua.is_onboarded = TRUE
                    ORDER BY ua.created_at ASC, ua.id ASC
                    """
                ),
                {"day": day},
            ).mappings().all()
        return _rows(rows)

    # conversation

    def get_conversation_state(self, user_id: str) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT current_state, context FROM conversation_state WHERE user_id=CAST(:id AS uuid)"),
                {"id": user_id},
            ).mappings().first()
        if not row:
            return None
        return {"current_state": row["current_state"], "context": row["context"] if isinstance(row["context"], dict) else {}}

    def save_conversation_state(self, user_id: str, current_state: str, context: dict[str, Any], now: datetime) -> None:
        with session_scope(self._session_factory) as db:
            self._upsert_conversation_state(db, user_id, current_state, context, now)
            db.commit()

    def save_conversation_step(
        self,
        user_id: str,
        current_state: str,
        context: dict[str, Any],
        now: datetime,
        *,
        profile_updates: dict[str, Any] | None = None,
        preference_updates: dict[str, Any] | None = None,
        new_answers: Iterable[dict[str, Any]] = (),
        mark_onboarded: bool = False,
    ) -> None:
        with session_scope(self._session_factory) as db:
            if profile_updates:
                self._upsert_profile(db, user_id, profile_updates, now)
            if preference_updates:
                self._upsert_preferences(db, user_id, preference_updates, now)
            for answer in new_answers:
                db.execute(
                    text(
                        """
                        INSERT INTO user_answer (id, user_id, question, answer, category, created_at)
                        VALUES (:aid, CAST(:id AS uuid), :question, :answer, :category, :now)
                        """
                    ),
                    {
                        "aid": str(uuid.uuid4()),
                        "id": user_id,
                        "question": answer["question"],
                        "answer": answer["answer"],
                        "category": answer.get("category") or "general",
                        "now": now,
                    },
                )
            if mark_onboarded:
                db.execute(
                    text("UPDATE user_account SET is_onboarded=TRUE, updated_at=:now WHERE id=CAST(:id AS uuid)"),
                    {"id": user_id, "now": now},
                )
            self._upsert_conversation_state(db, user_id, current_state, context, now)
            db.commit()

    def _upsert_conversation_state(self, db, user_id: str, current_state: str, context: dict[str, Any], now: datetime) -> None:
        db.execute(
            text(
                """
                INSERT INTO conversation_state (user_id, current_state, context, last_interaction, updated_at)
                VALUES (CAST(:id AS uuid), :current_state, CAST(:context AS jsonb), :now, :now)
                ON CONFLICT (user_id)
                DO UPDATE SET current_state=EXCLUDED.current_state,
                              context=EXCLUDED.context,
                              last_interaction=EXCLUDED.last_interaction,
                              updated_at=EXCLUDED.updated_at
                """
            ),
            {"id": user_id, "current_state": current_state, "context": json.dumps(context, default=str), "now": now},
        )

    def _upsert_profile(self, db, user_id: str, fields: dict[str, Any], now: datetime) -> None:
        db.execute(
            text(
                """
                INSERT INTO user_profile (user_id, display_name, birth_date, gender, city, bio, updated_at)
                VALUES (CAST(:id AS uuid), :display_name, :birth_date, :gender, :city, :bio, :now)
                ON CONFLICT (user_id)
                DO UPDATE SET display_name=COALESCE(EXCLUDED.display_name, user_profile.display_name),
                              birth_date=COALESCE(EXCLUDED.birth_date, user_profile.birth_date),
                              gender=COALESCE(EXCLUDED.gender, user_profile.gender),
                              city=COALESCE(EXCLUDED.city, user_profile.city),
                              bio=COALESCE(EXCLUDED.bio, user_profile.bio),
                              updated_at=EXCLUDED.updated_at
                """
            ),
            {
                "id": user_id,
                "display_name": fields.get("display_name"),
                "birth_date": fields.get("birth_date"),
                "gender": fields.get("gender"),
                "city": fields.get("city"),
                "bio": fields.get("bio"),
                "now": now,
            },
        )

    def _upsert_preferences(self, db, user_id: str, fields: dict[str, Any], now: datetime) -> None:
        db.execute(
            text(
                """
                INSERT INTO user_preferences
                  (user_id, orientation, accepted_genders, min_age, max_age, max_distance_miles, dealbreakers, updated_at)
                VALUES (
                  CAST(:id AS uuid), :orientation,
                  COALESCE(CAST(:accepted_genders AS jsonb), '[]'::jsonb),
                  :min_age, :max_age, :max_distance_miles,
                  COALESCE(CAST(:dealbreakers AS jsonb), '[]'::jsonb),
                  :now
                )
                ON CONFLICT (user_id)
                DO UPDATE SET orientation=COALESCE(:orientation, user_preferences.orientation),
                              accepted_genders=COALESCE(CAST(:accepted_genders AS jsonb), user_preferences.accepted_genders),
                              min_age=COALESCE(:min_age, user_preferences.min_age),
                              max_age=COALESCE(:max_age, user_preferences.max_age),
                              max_distance_miles=COALESCE(:max_distance_miles, user_preferences.max_distance_miles),
                              dealbreakers=COALESCE(CAST(:dealbreakers AS jsonb), user_preferences.dealbreakers),
                              updated_at=:now
                """
            ),
            {
                "id": user_id,
                "orientation": fields.get("orientation"),
                "accepted_genders": _json_or_none(fields.get("accepted_genders")),
                "min_age": fields.get("min_age"),
                "max_age": fields.get("max_age"),
                "max_distance_miles": fields.get("max_distance_miles"),
                "dealbreakers": _json_or_none(fields.get("dealbreakers")),
                "now": now,
            },
        )

    # proposals

    def create_proposal(self, proposal: dict[str, Any]) -> dict[str, Any] | None:
        """Claim both participants for the day and insert the proposal in one transaction.

        Returns None, with nothing written, when the partner is already claimed for
        the day or the requester has become somebody else's partner.
        """
        requester = str(proposal["user1_id"])
        day = proposal["proposed_date"]
        with session_scope(self._session_factory) as db:
            # sorted so concurrent runs take the claim rows in the same order
            for user_id in sorted((requester, str(proposal["user2_id"]))):
                db.execute(
                    text(
                        """
                        INSERT INTO proposal_claim (user_id, day, requester_id, created_at)
                        VALUES (CAST(:user_id AS uuid), :day, CAST(:requester AS uuid), :now)
                        ON CONFLICT (user_id, day) DO NOTHING
                        """
                    ),
                    {"user_id": user_id, "day": day, "requester": requester, "now": proposal["created_at"]},
                )
            holders = db.execute(
                text(
                    """
                    SELECT user_id, requester_id FROM proposal_claim
                    WHERE day=:day AND user_id IN (CAST(:user1_id AS uuid), CAST(:user2_id AS uuid))
                    """
                ),
                {"day": day, "user1_id": requester, "user2_id": proposal["user2_id"]},
            ).mappings().all()
            if {str(r["user_id"]): str(r["requester_id"]) for r in holders} != {
                requester: requester,
                str(proposal["user2_id"]): requester,
            }:
                db.rollback()
                return None
            row = db.execute(
                text(
                    """
                    INSERT INTO match_proposal
                      (id, user1_id, user2_id, status, score, score_breakdown, proposed_date, proposed_time,
                       proposed_activity, proposed_area, user1_response, user2_response, created_at, expires_at)
                    VALUES
                      (:id, CAST(:user1_id AS uuid), CAST(:user2_id AS uuid), :status, :score, CAST(:score_breakdown AS jsonb),
                       :proposed_date, :proposed_time, :proposed_activity, :proposed_area,
                       :user1_response, :user2_response, :created_at, :expires_at)
                    ON CONFLICT DO NOTHING
                    RETURNING *
                    """
                ),
                {**proposal, "score_breakdown": json.dumps(proposal.get("score_breakdown") or {})},
            ).mappings().first()
            if row is None:
                db.rollback()
                return None
            db.commit()
        return _row(row)

    def get_proposal(self, proposal_id: str) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT * FROM match_proposal WHERE id=CAST(:id AS uuid)"),
                {"id": proposal_id},
            ).mappings().first()
        return _row(row)

    def list_proposals_for_user(self, user_id: str) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                text(
                    """
                    SELECT * FROM match_proposal
                    WHERE user1_id=CAST(:id AS uuid) OR user2_id=CAST(:id AS uuid)
                    ORDER BY created_at ASC, id ASC
                    """
                ),
                {"id": user_id},
            ).mappings().all()
        return _rows(rows)

    def has_proposal_on(self, user_id: str, day: date) -> bool:
        return self.get_day_claim(user_id, day) is not None

    def get_day_claim(self, user_id: str, day: date) -> str | None:
        """Requester holding ``user_id`` for ``day``; the user's own id when they ran as requester."""
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text("SELECT requester_id FROM proposal_claim WHERE user_id=CAST(:id AS uuid) AND day=:day"),
                {"id": user_id, "day": day},
            ).mappings().first()
        return str(row["requester_id"]) if row else None

    def record_proposal_response(self, proposal_id: str, side: str, response: str, now: datetime) -> dict[str, Any] | None:
        if side not in {"user1", "user2"}:
            raise ValueError(f"Unknown proposal side: {side}")
        column = f"{side}_response"
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text(
                    f"""
                    UPDATE match_proposal
                    SET {column}=:response
                    WHERE id=CAST(:id AS uuid)
                      AND status='proposed'
                      AND expires_at > :now
                      AND {column}='pending'
                    RETURNING *
                    """
                ),
                {"id": proposal_id, "response": response, "now": now},
            ).mappings().first()
            db.commit()
        return _row(row)

    def update_proposal_status(self, proposal_id: str, status: str, from_status: str = "proposed") -> bool:
        with session_scope(self._session_factory) as db:
            result = db.execute(
                text("UPDATE match_proposal SET status=:status WHERE id=CAST(:id AS uuid) AND status=:from_status"),
                {"id": proposal_id, "status": status, "from_status": from_status},
            )
            db.commit()
        return bool(result.rowcount)

    # messages and audit

    def record_message(
        self,
        user_id: str | None,
        direction: str,
        body: str,
        provider_sid: str | None = None,
        status: str | None = None,
    ) -> None:
        with session_scope(self._session_factory) as db:
            db.execute(
                text(
                    """
                    INSERT INTO sms_message (id, user_id, direction, body, provider_sid, status)
                    VALUES (:mid, CAST(NULLIF(:user_id, '') AS uuid), :direction, :body, :provider_sid, :status)
                    """
                ),
                {
                    "mid": str(uuid.uuid4()),
                    "user_id": user_id or "",
                    "direction": direction,
                    "body": body,
                    "provider_sid": provider_sid,
                    "status": status,
                },
            )
            db.commit()

    def update_message_status(self, provider_sid: str, status: str, error_code: str | None = None) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            row = db.execute(
                text(
                    """
                    UPDATE sms_message
                    SET status=:status, error_code=:error_code, updated_at=now()
                    WHERE provider_sid=:sid
                    RETURNING id, user_id, status
                    """
                ),
                {"sid": provider_sid, "status": status, "error_code": error_code},
            ).mappings().first()
            db.commit()
        return _row(row)

    def log_audit_event(self, user_id: str | None, event_type: str, payload: dict[str, Any] | None = None) -> None:
        with session_scope(self._session_factory) as db:
            db.execute(
                text(
                    """
                    INSERT INTO audit_event (id, user_id, event_type, payload)
                    VALUES (:id, CAST(NULLIF(:user_id, '') AS uuid), :event_type, CAST(:payload AS jsonb))
                    """
                ),
                {
                    "id": str(uuid.uuid4()),
                    "user_id": user_id or "",
                    "event_type": event_type,
                    "payload": json.dumps(payload or {}, default=str),
                },
            )
            db.commit()
