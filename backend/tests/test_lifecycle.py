import os
import sys
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from quoteflow.models import Invoice
from quoteflow.services.directory_store import DirectoryStore
from quoteflow.services.errors import UnauthorizedError
from quoteflow.services.lifecycle import QuotationLifecycle
from quoteflow.services.notification_store import NotificationStore
from quoteflow.services.notifier import QuotationNotifier
from quoteflow.services.payment_client import PaymentClient, PaymentError
from quoteflow.services.quotation_store import QuotationStore
from quoteflow.services.state_machine import Caller


class FakeSender:
    enabled = False

    def __init__(self, fail: bool = False):
        self.fail = fail

    def send(self, tokens, title, body, data):
        if self.fail:
            raise RuntimeError("push backend down")
        return []


class FakePayments:
    enabled = True

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def create_invoice(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise PaymentError("Payment API error: 502 - bad gateway")
        return Invoice(
            id="inv_1",
            quotation_id=kwargs["quotation_id"],
            amount=kwargs["amount"],
            currency=kwargs["currency"],
        )


def _build(tmp_path, *, notify_fail=False, pay_fail=False, payments=None):
    directory = DirectoryStore(db_path=str(tmp_path / "quoteflow.sqlite3"))
    store = QuotationStore(db_path=directory.db_path, directory=directory)
    notifications = NotificationStore(sender=FakeSender(fail=notify_fail))
    payments = payments or FakePayments(fail=pay_fail)
    engine = QuotationLifecycle(
        store=store,
        directory=directory,
        notifier=QuotationNotifier(store, directory, notifications),
        payments=payments,
        reminder_tiers=[15, 60],
    )
    return engine, notifications, payments


def _caller(directory, role, name):
    user = directory.create_user(display_name=name, email=f"{name}_{uuid4().hex[:8]}@example.com", role=role)
    return Caller(user_id=user.id, role=user.role)


def _setup_request(engine, provider_count=2):
    requester = _caller(engine.directory, "requester", "req")
    provider_callers = []
    provider_ids = []
    for idx in range(provider_count):
        caller = _caller(engine.directory, "provider", f"prov{idx}")
        provider = engine.directory.create_provider(owner_user_id=caller.user_id, name=f"Provider {idx}")
        provider_callers.append(caller)
        provider_ids.append(provider.id)
    result = engine.create_request(requester, details="Install heat pump", provider_ids=provider_ids)
    return requester, provider_callers, result


def test_create_request_notifies_each_targeted_provider(tmp_path):
    engine, notifications, _ = _build(tmp_path)
    _, providers, result = _setup_request(engine, provider_count=2)

    assert result.status == "open"
    assert result.warnings == []
    for caller, quotation in zip(providers, result.quotations):
        inbox = notifications.list_for_user(caller.user_id)
        assert [n.deep_link for n in inbox] == [f"quotation:{quotation.id}"]


def test_full_scenario_accept_fulfils_and_invoices(tmp_path):
    engine, notifications, payments = _build(tmp_path)
    requester, (p1, p2), result = _setup_request(engine)
    q1, q2 = result.quotations

    quoted = engine.submit_quote(p1, q1.id, price=100, timeline="3 days")
    assert quoted.quotation.status == "quoted"
    assert any(n.title == "Quote received" for n in notifications.list_for_user(requester.user_id))

    accepted = engine.accept_quotation(requester, q1.id)

    assert accepted.quotation.status == "accepted"
    assert accepted.status == "fulfilled"
    assert {q.id: q.status for q in accepted.quotations} == {q1.id: "accepted", q2.id: "rejected"}
    assert accepted.invoice is not None and accepted.invoice.amount == 100
    assert payments.calls[0]["requester_id"] == requester.user_id
    assert accepted.warnings == []
    assert any(n.title == "Quote accepted" for n in notifications.list_for_user(p1.user_id))
    assert any(n.title == "Quotation closed" for n in notifications.list_for_user(p2.user_id))


def test_only_entitled_party_may_transition(tmp_path):
    engine, _, _ = _build(tmp_path)
    requester, (p1, p2), result = _setup_request(engine)
    q1 = result.quotations[0]

    with pytest.raises(UnauthorizedError):
        engine.submit_quote(p2, q1.id, price=10, timeline="1 day")
    with pytest.raises(UnauthorizedError):
        engine.submit_quote(requester, q1.id, price=10, timeline="1 day")

    engine.submit_quote(p1, q1.id, price=10, timeline="1 day")
    with pytest.raises(UnauthorizedError):
        engine.accept_quotation(p1, q1.id)
    stranger = _caller(engine.directory, "requester", "stranger")
    with pytest.raises(UnauthorizedError):
        engine.reject_quotation(stranger, q1.id)
    assert engine.store.get_quotation(q1.id).status == "quoted"


def test_reject_picks_party_from_caller(tmp_path):
    engine, notifications, _ = _build(tmp_path)
    requester, (p1, p2), result = _setup_request(engine)
    q1, q2 = result.quotations

    declined = engine.reject_quotation(p1, q1.id)
    assert declined.quotation.status == "rejected"
    assert any(n.title == "Provider declined" for n in notifications.list_for_user(requester.user_id))

    engine.submit_quote(p2, q2.id, price=70, timeline="next week")
    closed = engine.reject_quotation(requester, q2.id)
    assert closed.status == "closed"
    assert [h.event for h in engine.store.list_transitions(q2.id)] == ["submit_quote", "requester_decline"]


def test_notification_failure_is_a_warning_not_a_rollback(tmp_path):
    engine, _, _ = _build(tmp_path, notify_fail=True)
    requester, (p1, _), result = _setup_request(engine)
    assert len(result.warnings) == 2

    q1 = result.quotations[0]
    quoted = engine.submit_quote(p1, q1.id, price=45, timeline="2 days")

    assert quoted.quotation.status == "quoted"
    assert quoted.warnings and "on_quote_submitted" in quoted.warnings[0]
    assert engine.store.get_quotation(q1.id).status == "quoted"


def test_payment_failure_keeps_acceptance(tmp_path):
    engine, _, payments = _build(tmp_path, pay_fail=True)
    requester, (p1, _), result = _setup_request(engine)
    q1 = result.quotations[0]
    engine.submit_quote(p1, q1.id, price=300, timeline="1 month")

    accepted = engine.accept_quotation(requester, q1.id)

    assert accepted.quotation.status == "accepted"
    assert accepted.invoice is None
    assert any("Invoice creation failed" in w for w in accepted.warnings)
    assert engine.store.get_request_status(accepted.request.id) == "fulfilled"
    assert len(payments.calls) == 1


def test_reminders_send_each_tier_once(tmp_path):
    engine, notifications, _ = _build(tmp_path)
    _, (p1, _), result = _setup_request(engine)
    created = datetime.fromisoformat(result.quotations[0].created_at)

    first = engine.dispatch_quote_reminders(now=created + timedelta(minutes=16))
    assert {item["tier"] for item in first} == {"15m"}
    assert len(first) == 2
    assert engine.dispatch_quote_reminders(now=created + timedelta(minutes=30)) == []

    later = engine.dispatch_quote_reminders(now=created + timedelta(minutes=61))
    assert {item["tier"] for item in later} == {"60m"}
    assert engine.dispatch_quote_reminders(now=created + timedelta(minutes=90)) == []

    reminders = [n for n in notifications.list_for_user(p1.user_id) if n.title == "Quotation request reminder"]
    assert len(reminders) == 2


def test_late_sweep_skips_straight_to_highest_tier(tmp_path):
    engine, _, _ = _build(tmp_path)
    _, (p1, _), result = _setup_request(engine)
    q1, q2 = result.quotations
    engine.submit_quote(p1, q1.id, price=10, timeline="1 day")
    now = datetime.now(timezone.utc) + timedelta(minutes=75)

    sent = engine.dispatch_quote_reminders(now=now)

    assert [(item["quotation_id"], item["tier"]) for item in sent] == [(q2.id, "60m")]
    assert engine.dispatch_quote_reminders(now=now + timedelta(minutes=5)) == []


class _MalformedInvoiceSession:
    def post(self, url, json, headers, timeout):
        return _MalformedInvoiceResponse()


class _MalformedInvoiceResponse:
    status_code = 201
    text = ""

    def json(self):
        return {"id": "inv_9", "amount": "n/a"}


def test_malformed_invoice_response_is_a_warning(tmp_path):
    payments = PaymentClient(base_url="https://pay.example.com", session=_MalformedInvoiceSession())
    engine, _, _ = _build(tmp_path, payments=payments)
    requester, (p1, _), result = _setup_request(engine)
    q1 = result.quotations[0]
    engine.submit_quote(p1, q1.id, price=120, timeline="1 week")

    accepted = engine.accept_quotation(requester, q1.id)

    assert accepted.quotation.status == "accepted"
    assert accepted.invoice is None
    assert any("invalid invoice" in w for w in accepted.warnings)
    assert engine.store.get_request_status(accepted.request.id) == "fulfilled"
