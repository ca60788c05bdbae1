import hmac
from typing import Mapping

from fastapi import HTTPException
from twilio.request_validator import RequestValidator


def validate_twilio_signature(auth_token: str, signature: str | None, url: str, params: Mapping[str, str]) -> None:
    # No token configured means signature checks are off (local development).
    if not auth_token:
        return
    if not signature or not RequestValidator(auth_token).validate(url, dict(params), signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def validate_cron_secret(authorization: str | None, secret: str) -> None:
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
