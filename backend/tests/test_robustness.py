import importlib
import os
import sqlite3
import sys

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "scripts"))

from quoteflow.services.directory_store import DirectoryStore
from quoteflow.services.lifecycle import _parse_reminder_tiers
from quoteflow.services.notification_store import NotificationStore
from quoteflow.services.payment_client import PaymentClient, PaymentError
from quoteflow.services.push_sender import PushSender


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    sys.modules.pop("quoteflow.auth", None)
    auth = importlib.import_module("quoteflow.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    sys.modules.pop("quoteflow.auth", None)
    auth = importlib.import_module("quoteflow.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_tampered_token_is_rejected():
    auth = importlib.import_module("quoteflow.auth")
    token, _ = auth.create_access_token("usr_1", "requester")
    claims = auth.verify_access_token(token)
    assert (claims.user_id, claims.role) == ("usr_1", "requester")

    _, signature = token.split(".", 1)
    forged_payload = auth._encode(f"usr_1|admin|{claims.expires_at}".encode("utf-8"))
    assert auth.verify_access_token(f"{forged_payload}.{signature}") is None
    assert auth.verify_access_token("garbage") is None
    assert auth.parse_bearer_token("Token abc") is None


def test_directory_store_handles_invalid_json_columns(tmp_path):
    db_path = tmp_path / "quoteflow.sqlite3"
    store = DirectoryStore(db_path=str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            INSERT INTO users (id, display_name, email, role, profile_json, created_at)
            VALUES ('u1', 'Broken', 'broken@example.com', 'provider', '{bad', '2026-01-01T00:00:00+00:00')
            """
        )
        conn.execute(
            """
            INSERT INTO providers (id, owner_user_id, name, services_json, rating, status, created_at)
            VALUES ('p1', 'u1', 'Broken Co', '42', 4.0, 'active', '2026-01-01T00:00:00+00:00')
            """
        )
        conn.commit()

    assert store.resolve_user("u1").profile == {}
    assert store.resolve_provider("p1").services == []


def test_reminder_tiers_parse_with_fallback():
    assert _parse_reminder_tiers("60, 15, 15") == [15, 60]
    assert _parse_reminder_tiers("5,x,-1") == [5]
    assert _parse_reminder_tiers("") == [15, 60]


class _FakeResponse:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, json, headers, timeout):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def _invoice_kwargs():
    return {
        "quotation_id": "qt_1",
        "request_id": "qr_1",
        "requester_id": "usr_r",
        "provider_id": "prov_1",
        "amount": 100.0,
        "currency": "USD",
    }


def test_payment_client_disabled_without_url():
    session = _FakeSession()
    client = PaymentClient(base_url="", session=session)
    assert client.enabled is False
    assert client.create_invoice(**_invoice_kwargs()) is None
    assert session.posts == []


def test_payment_client_creates_invoice():
    session = _FakeSession(response=_FakeResponse(201, {"id": "inv_9", "status": "open"}))
    client = PaymentClient(base_url="https://pay.example.com/", api_token="secret", session=session)

    invoice = client.create_invoice(**_invoice_kwargs())

    assert invoice.id == "inv_9"
    assert invoice.amount == 100.0
    assert session.posts[0]["url"] == "https://pay.example.com/invoices"
    assert session.posts[0]["headers"]["Authorization"] == "Bearer secret"
    assert session.posts[0]["json"]["reference"] == "qt_1"


@pytest.mark.parametrize(
    "session",
    [
        _FakeSession(error=requests.ConnectionError("refused")),
        _FakeSession(response=_FakeResponse(502, text="bad gateway")),
        _FakeSession(response=_FakeResponse(200, None)),
        _FakeSession(response=_FakeResponse(200, {"status": "open"})),
        _FakeSession(response=_FakeResponse(201, ["inv_1"])),
        _FakeSession(response=_FakeResponse(201, {"id": "inv_9", "amount": "n/a"})),
        _FakeSession(response=_FakeResponse(201, {"id": "inv_9", "amount": None})),
    ],
)
def test_payment_client_failures_raise_payment_error(session):
    client = PaymentClient(base_url="https://pay.example.com", session=session)
    with pytest.raises(PaymentError):
        client.create_invoice(**_invoice_kwargs())


def test_push_sender_disabled_without_credentials(tmp_path):
    assert PushSender(credentials_path="").enabled is False
    missing = PushSender(credentials_path=str(tmp_path / "missing.json"))
    assert missing.enabled is False
    assert missing.send(["token"], "title", "body", {}) == []


def test_audit_report_summarises_transitions():
    report_module = importlib.import_module("quotation_audit_report")
    rows = [
        {
            "quotation_id": "qt_1",
            "request_id": "qr_1",
            "from_status": "pending",
            "to_status": "quoted",
            "event": "submit_quote",
            "created_at": "2026-01-01T00:30:00+00:00",
            "quotation_created_at": "2026-01-01T00:00:00+00:00",
        },
        {
            "quotation_id": "qt_1",
            "request_id": "qr_1",
            "from_status": "quoted",
            "to_status": "accepted",
            "event": "requester_accept",
            "created_at": "2026-01-01T01:00:00+00:00",
            "quotation_created_at": "2026-01-01T00:00:00+00:00",
        },
        {
            "quotation_id": "qt_2",
            "request_id": "qr_2",
            "from_status": "pending",
            "to_status": "rejected",
            "event": "provider_decline",
            "created_at": "2026-01-01T02:00:00+00:00",
            "quotation_created_at": "2026-01-01T00:00:00+00:00",
        },
    ]

    report = report_module.build_report(rows)

    assert report["total_transitions"] == 3
    assert report["fulfilled_requests"] == 1
    assert report["fulfilment_rate"] == 0.5
    assert report["avg_quote_response_minutes"] == 30.0
    assert report["event_counts"]["submit_quote"] == 1


class _DeadTokenSender:
    enabled = True

    def __init__(self):
        self.sent_to = []

    def send(self, tokens, title, body, data):
        self.sent_to.append(list(tokens))
        return [token for token in tokens if token.startswith("dead")]


def test_notification_store_caps_inbox_and_prunes_dead_tokens():
    sender = _DeadTokenSender()
    store = NotificationStore(sender=sender, max_per_user=3)
    assert store.register_device_token("usr_1", "dead-1") is True
    assert store.register_device_token("usr_1", "live-1", platform="ios") is True
    assert store.register_device_token("usr_1", "  ") is False

    for idx in range(5):
        store.publish("usr_1", title=f"n{idx}", body="body", category="quotation")

    assert [record.title for record in store.list_for_user("usr_1")] == ["n4", "n3", "n2"]
    assert sender.sent_to[0] == ["dead-1", "live-1"]
    assert sender.sent_to[-1] == ["live-1"]
    assert store.unread_count("usr_1") == 3
    assert store.mark_all_read("usr_1") == 3
    assert store.list_for_user("usr_1", unread_only=True) == []
    assert store.mark_read("usr_2", store.list_for_user("usr_1")[0].id) is None
