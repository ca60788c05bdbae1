from fastapi import Header, Request

from . import config
from .security import validate_cron_secret


def get_clients(request: Request):
    clients = getattr(request.app.state, "clients", None)
    if clients is None:
        from .clients import build_clients

        clients = build_clients()
        request.app.state.clients = clients
    return clients


def public_url(request: Request) -> str:
    """URL Twilio signed: the configured public base when set, else what we were called on."""
    if config.PUBLIC_BASE_URL:
        query = f"?{request.url.query}" if request.url.query else ""
        return f"{config.PUBLIC_BASE_URL}{request.url.path}{query}"
    return str(request.url)


def require_cron(authorization: str | None = Header(default=None)) -> None:
    validate_cron_secret(authorization, config.CRON_SECRET)
