import logging
import os
import time
from pathlib import Path
from typing import Any

import redis
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import APP_NAME, DATABASE_URL, LOG_LEVEL
from .database import create_session_factory
from .deps import get_clients
from .errors import StoreUnavailableError
from .repo import SqlStore
from .clients import build_clients
from .routes import include_modular_routers

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

SessionLocal = create_session_factory(DATABASE_URL)

app = FastAPI(title=f"{APP_NAME} API")
include_modular_routers(app)


@app.exception_handler(StoreUnavailableError)
def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("[store] unavailable path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})


def run_migrations() -> None:
    env_dir = os.getenv("MIGRATIONS_DIR", "").strip()
    docker_dir = Path("/app/migrations")
    local_dir = Path(__file__).resolve().parents[1] / "migrations"

    if env_dir:
        migrations_dir = Path(env_dir)
    elif docker_dir.exists():
        migrations_dir = docker_dir
    else:
        migrations_dir = local_dir

    if not migrations_dir.is_dir():
        raise FileNotFoundError(
            "Migrations directory not found. Checked: "
            f"MIGRATIONS_DIR={env_dir or '<unset>'}, {docker_dir}, {local_dir}"
        )

    files = sorted(f.name for f in migrations_dir.iterdir() if f.is_file() and f.suffix == ".sql")
    with SessionLocal() as db:
        for fname in files:
            db.execute(text((migrations_dir / fname).read_text(encoding="utf-8")))
        db.commit()
    logger.info("[startup] applied %s migration files from %s", len(files), migrations_dir)


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@app.on_event("startup")
def on_startup() -> None:
    wait_for_db()
    run_migrations()
    if getattr(app.state, "clients", None) is None:
        app.state.clients = build_clients(store=SqlStore(SessionLocal))


@app.on_event("shutdown")
def on_shutdown() -> None:
    clients = getattr(app.state, "clients", None)
    if clients is not None:
        clients.close()
        app.state.clients = None


@app.get("/health")
def health(clients=Depends(get_clients)) -> dict[str, Any]:
    checks: dict[str, str] = {}
    try:
        clients.store.ping()
        checks["database"] = "ok"
    except StoreUnavailableError as exc:
        logger.warning("[health] database unavailable error=%s", exc)
        checks["database"] = "unavailable"
    try:
        clients.cache.ping()
        checks["cache"] = "ok"
    except redis.RedisError as exc:
        logger.warning("[health] cache unavailable error=%s", exc)
        checks["cache"] = "unavailable"
    status = "ok" if all(v == "ok" for v in checks.values()) else "degraded"
    return {"status": status, "checks": checks}
