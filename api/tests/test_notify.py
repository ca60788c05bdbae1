import json

import pytest
import requests
from twilio.base.exceptions import TwilioRestException

from blindmatch.errors import NotificationError
from blindmatch.services.notify import TwilioNotifier, dispatch

from conftest import FakeNotifier, InMemoryStore


class _Message:
    def __init__(self, sid):
        self.sid = sid


class _Messages:
    def __init__(self, sid=None, error=None):
        self.sid = sid
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return _Message(self.sid)


class _Client:
    def __init__(self, sid=None, error=None):
        self.messages = _Messages(sid, error)
        self.http_client = None


def _notifier(client, **kw):
    return TwilioNotifier("AC1", "tok", "+15550009999", client=client, **kw)


def test_send_creates_message_and_returns_sid():
    client = _Client(sid="SM123")
    notifier = _notifier(client, status_callback_url="https://x.test/webhooks/sms/status")

    assert notifier.send("+15550001111", "hi") == "SM123"
    assert client.messages.calls == [
        {"to": "+15550001111", "from_": "+15550009999", "body": "hi", "status_callback": "https://x.test/webhooks/sms/status"}
    ]


def test_send_omits_status_callback_when_unset():
    client = _Client(sid="SM1")
    _notifier(client).send("+15550001111", "hi")
    assert "status_callback" not in client.messages.calls[0]


def test_rejected_message_keeps_status_code():
    client = _Client(error=TwilioRestException(400, "/Messages.json", msg="invalid number"))

    with pytest.raises(NotificationError) as exc:
        _notifier(client).send("+15550001111", "hi")
    assert exc.value.status_code == 400


@pytest.mark.parametrize(
    "client",
    [
        _Client(sid=None),
        _Client(error=requests.ConnectionError("down")),
        _Client(error=json.JSONDecodeError("Expecting value", "<html>", 0)),
    ],
)
def test_send_failures_raise_notification_error(client):
    with pytest.raises(NotificationError):
        _notifier(client).send("+15550001111", "hi")


def test_dispatch_logs_outcome_and_never_raises():
    store = InMemoryStore()
    ok = dispatch(store, FakeNotifier(), {"id": "u1", "phone": "+1555"}, "hello")
    failed = dispatch(store, FakeNotifier(fail_for={"+1555"}), {"id": "u1", "phone": "+1555"}, "hello")

    assert ok == "SM000001"
    assert failed is None
    assert [m["status"] for m in store.messages] == ["queued", "failed"]


def test_dispatch_survives_unreadable_provider_reply():
    store = InMemoryStore()
    notifier = _notifier(_Client(error=json.JSONDecodeError("Expecting value", "<html>", 0)))

    assert dispatch(store, notifier, {"id": "u1", "phone": "+1555"}, "hello") is None
    assert [(m["user_id"], m["status"]) for m in store.messages] == [("u1", "failed")]


def test_missing_credentials_fail_at_send_not_at_startup(monkeypatch):
    monkeypatch.delenv("TWILIO_ACCOUNT_SID", raising=False)
    monkeypatch.delenv("TWILIO_AUTH_TOKEN", raising=False)
    notifier = TwilioNotifier("", "", "+15550009999")
    notifier.close()

    with pytest.raises(NotificationError):
        notifier.send("+15550001111", "hi")
