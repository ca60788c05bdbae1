import logging
from typing import Any

import requests
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from ..errors import NotificationError

logger = logging.getLogger(__name__)


class TwilioNotifier:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        status_callback_url: str | None = None,
        timeout: float = 10.0,
        client: Client | None = None,
    ) -> None:
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self._credentials = (account_sid, auth_token)
        self._timeout = timeout
        self._client = client

    def _messages(self):
        # built on first send; the SDK refuses empty credentials at construction
        if self._client is None:
            self._client = Client(*self._credentials, http_client=TwilioHttpClient(timeout=self._timeout))
        return self._client.messages

    def send(self, to: str, body: str) -> str:
        """Hand one SMS to Twilio and return its message SID."""
        extra = {"status_callback": self.status_callback_url} if self.status_callback_url else {}
        try:
            message = self._messages().create(to=to, from_=self.from_number, body=body, **extra)
        except TwilioRestException as exc:
            raise NotificationError(f"Twilio rejected message: {exc.msg}", status_code=exc.status) from exc
        except (TwilioException, requests.RequestException, ValueError) as exc:
            # transport failures and unreadable replies
            raise NotificationError(f"Twilio request failed: {exc}") from exc
        if not message.sid:
            raise NotificationError("Twilio response missing sid")
        logger.info("[notify] SMS queued sid=%s", message.sid)
        return str(message.sid)

    def close(self) -> None:
        if self._client is None:
            return
        session = getattr(self._client.http_client, "session", None)
        if session is not None:
            session.close()


def dispatch(store, notifier, user: dict[str, Any], body: str) -> str | None:
    """Send ``body`` to ``user`` and log it. Failures are logged, never raised."""
    user_id = str(user.get("id") or "") or None
    try:
        sid = notifier.send(user["phone"], body)
    except NotificationError as exc:
        logger.error("[notify] send failed user_id=%s error=%s", user_id, exc)
        store.record_message(user_id, "outbound", body, status="failed")
        return None
    store.record_message(user_id, "outbound", body, provider_sid=sid, status="queued")
    return sid
