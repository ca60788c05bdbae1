import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from .. import config
from ..deps import get_clients, public_url
from ..security import validate_twilio_signature
from ..services.clock import now_utc
from ..services.conversation import normalize_phone
from ..services.rate_limit import enforce_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
FAILED_DELIVERY_STATUSES = {"failed", "undelivered"}


async def signed_form(request: Request, x_twilio_signature: str | None = Header(default=None)) -> dict[str, str]:
    try:
        form = await request.form()
    except Exception as exc:
        raise HTTPException(status_code=400, detail="Malformed form body") from exc
    params = {key: str(value) for key, value in form.items()}
    validate_twilio_signature(config.TWILIO_AUTH_TOKEN, x_twilio_signature, public_url(request), params)
    return params


def _twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/webhooks/sms")
def inbound_sms(params: dict[str, str] = Depends(signed_form), clients=Depends(get_clients)) -> Response:
    body = params.get("Body")
    if body is None or not params.get("From"):
        raise HTTPException(status_code=400, detail="From and Body are required")
    try:
        phone = normalize_phone(params["From"])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    enforce_rate_limit(clients.limiter, phone)
    outcome = clients.engine.handle_inbound(phone, body, now_utc(), message_sid=params.get("MessageSid"))
    logger.info("[sms] inbound sid=%s outcome=%s", params.get("MessageSid"), outcome)
    return _twiml()


@router.post("/webhooks/sms/status")
def sms_status(params: dict[str, str] = Depends(signed_form), clients=Depends(get_clients)) -> dict[str, Any]:
    sid = params.get("MessageSid")
    status = params.get("MessageStatus")
    if not sid or not status:
        raise HTTPException(status_code=400, detail="MessageSid and MessageStatus are required")
    error_code = params.get("ErrorCode") or None

    row = clients.store.update_message_status(sid, status, error_code)
    if row is None:
        logger.warning("[sms] status for unknown sid=%s status=%s", sid, status)
        return {"ok": True, "updated": False}
    if status in FAILED_DELIVERY_STATUSES:
        clients.store.log_audit_event(
            row.get("user_id"),
            "sms_delivery_failed",
            {"message_sid": sid, "status": status, "error_code": error_code},
        )
        logger.warning("[sms] delivery failed sid=%s status=%s error_code=%s", sid, status, error_code)
    return {"ok": True, "updated": True}
