import json
import os
from typing import Any

APP_NAME = os.getenv("APP_NAME", "BlindMatch")
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/blindmatch")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_BACKEND = os.getenv("CACHE_BACKEND", "redis").strip().lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
MATCH_TIMEZONE = os.getenv("MATCH_TIMEZONE", "America/New_York")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o")
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "30"))
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "300"))

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER", "")
TWILIO_TIMEOUT_SECONDS = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
CRON_SECRET = os.getenv("CRON_SECRET", "")

MIN_MATCH_SCORE = float(os.getenv("MIN_MATCH_SCORE", "0.3"))
PROPOSALS_PER_USER = int(os.getenv("PROPOSALS_PER_USER", "3"))
PROPOSAL_TTL_HOURS = int(os.getenv("PROPOSAL_TTL_HOURS", "2"))
PROPOSAL_DEFAULT_TIME = os.getenv("PROPOSAL_DEFAULT_TIME", "19:00")
PROPOSAL_DEFAULT_ACTIVITY = os.getenv("PROPOSAL_DEFAULT_ACTIVITY", "Coffee or drinks")
PROPOSAL_DEFAULT_AREA = os.getenv("PROPOSAL_DEFAULT_AREA", "Downtown")

DEFAULT_SCORING_CONFIG: dict[str, Any] = {
    "VECTOR_W": float(os.getenv("VECTOR_W", "0.6")),
    "PREFERENCE_W": float(os.getenv("PREFERENCE_W", "0.2")),
    "VALUES_W": float(os.getenv("VALUES_W", "0.2")),
}

if os.getenv("SCORING_CONFIG_JSON"):
    try:
        DEFAULT_SCORING_CONFIG.update(json.loads(os.getenv("SCORING_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        pass

CONVERSATION_CACHE_TTL_SECONDS = int(os.getenv("CONVERSATION_CACHE_TTL_SECONDS", "3600"))
CONTEXT_EXTRA_KEYS_MAX = int(os.getenv("CONTEXT_EXTRA_KEYS_MAX", "32"))
CONTEXT_EXTRA_VALUE_MAX_CHARS = int(os.getenv("CONTEXT_EXTRA_VALUE_MAX_CHARS", "500"))
RECENT_ANSWERS_IN_CONTEXT = int(os.getenv("RECENT_ANSWERS_IN_CONTEXT", "3"))

RL_SMS_LIMIT = int(os.getenv("RL_SMS_LIMIT", "10"))
RL_WINDOW_SECONDS = int(os.getenv("RL_WINDOW_SECONDS", "60"))

BATCH_MAX_WORKERS = int(os.getenv("BATCH_MAX_WORKERS", "4"))
