import logging
from dataclasses import dataclass
from typing import Any

from . import config
from .database import create_session_factory
from .repo import SqlStore
from .services.cache import MemoryCache, RedisCache
from .services.conversation import ConversationEngine, UserLockRegistry
from .services.llm import OpenAIConversationGenerator, OpenAIEmbedder
from .services.notify import TwilioNotifier
from .services.rate_limit import FixedWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class Clients:
    store: Any
    cache: Any
    generator: Any
    embedder: Any
    notifier: Any
    limiter: FixedWindowRateLimiter
    engine: ConversationEngine

    def close(self) -> None:
        for name in ("generator", "embedder", "notifier", "cache"):
            client = getattr(self, name)
            try:
                client.close()
            except Exception as exc:
                logger.warning("[clients] close failed client=%s error=%s", name, exc)


def build_cache():
    if config.CACHE_BACKEND == "memory":
        logger.info("[clients] using in-process cache")
        return MemoryCache()
    return RedisCache(config.REDIS_URL)


def build_clients(store=None, cache=None, generator=None, embedder=None, notifier=None) -> Clients:
    """Wire the production collaborators. Any argument given replaces the default."""
    store = store or SqlStore(create_session_factory(config.DATABASE_URL))
    cache = cache or build_cache()
    generator = generator or OpenAIConversationGenerator(
        config.OPENAI_API_KEY,
        config.OPENAI_CHAT_MODEL,
        timeout=config.OPENAI_TIMEOUT_SECONDS,
        temperature=config.OPENAI_TEMPERATURE,
        max_tokens=config.OPENAI_MAX_TOKENS,
    )
    embedder = embedder or OpenAIEmbedder(
        config.OPENAI_API_KEY,
        config.OPENAI_EMBEDDING_MODEL,
        timeout=config.OPENAI_TIMEOUT_SECONDS,
    )
    notifier = notifier or TwilioNotifier(
        config.TWILIO_ACCOUNT_SID,
        config.TWILIO_AUTH_TOKEN,
        config.TWILIO_PHONE_NUMBER,
        status_callback_url=f"{config.PUBLIC_BASE_URL}/webhooks/sms/status" if config.PUBLIC_BASE_URL else None,
        timeout=config.TWILIO_TIMEOUT_SECONDS,
    )
    limiter = FixedWindowRateLimiter(cache, config.RL_SMS_LIMIT, config.RL_WINDOW_SECONDS)
    engine = ConversationEngine(store, cache, generator, notifier, embedder, UserLockRegistry())
    return Clients(
        store=store,
        cache=cache,
        generator=generator,
        embedder=embedder,
        notifier=notifier,
        limiter=limiter,
        engine=engine,
    )
