import json

import pytest

from conftest import sign
from mediaproof.extensions import get_webhook_reconciler
from mediaproof.models import CreditEntry, Payment
from mediaproof.payments.extraction import extract_payment_fields


def _event(reference="ref-1", status="success", credits=50, owner_id="user_1", email=None, **extra):
    metadata = {"credits": credits}
    if owner_id:
        metadata["ownerId"] = owner_id
    data = {
        "status": status,
        "reference": reference,
        "amount": 500000,
        "currency": "NGN",
        "metadata": metadata,
        "customer": {"email": email} if email else {},
    }
    data.update(extra)
    return {"event": "charge.success", "data": data}


def _post(client, payload, signature=None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    sig = sign(body) if signature is None else signature
    if sig:
        headers["X-Paystack-Signature"] = sig
    return client.post("/payments/webhook", data=body, headers=headers)


def _payment(app, reference="ref-1"):
    with app.app_context():
        p = Payment.query.filter_by(reference=reference).first()
        return None if p is None else {"processed": p.processed, "status": p.status, "credits": p.credits, "owner_id": p.owner_id}


# ── signature ───────────────────────────────────────────────

def test_invalid_signature_is_rejected_and_nothing_stored(app, client, make_user, balance):
    make_user(credits=0)

    resp = _post(client, _event(), signature="deadbeef")

    assert resp.status_code == 401
    assert _payment(app) is None
    assert balance() == 0


def test_missing_signature_is_rejected(app, client):
    assert _post(client, _event(), signature="").status_code == 401
    assert _payment(app) is None


def test_non_ascii_signature_is_rejected(app, client, make_user, balance):
    make_user(credits=0)

    resp = _post(client, _event(), signature="é" * 10)

    assert resp.status_code == 401
    assert _payment(app) is None
    assert balance() == 0


def test_missing_secret_is_server_error(make_app):
    app = make_app(PAYSTACK_SECRET_KEY="")
    resp = _post(app.test_client(), _event())
    assert resp.status_code == 500


# ── crediting ───────────────────────────────────────────────

def test_success_credits_owner(app, client, make_user, balance):
    make_user(credits=0)

    resp = _post(client, _event())

    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "status": "credited"}
    assert balance() == 50
    assert _payment(app) == {"processed": True, "status": "success", "credits": 50, "owner_id": "user_1"}
    with app.app_context():
        entry = CreditEntry.query.one()
        assert (entry.kind, entry.delta, entry.reference) == ("purchase", 50, "ref-1")


def test_redelivery_credits_once(app, client, make_user, balance):
    make_user(credits=0)

    first = _post(client, _event())
    second = _post(client, _event())

    assert first.get_json()["status"] == "credited"
    assert second.status_code == 200
    assert second.get_json()["status"] == "duplicate"
    assert balance() == 50


def test_payer_matched_by_email_case_insensitively(app, client, make_user, balance):
    make_user("user_9", credits=5, email="payer@example.com")

    resp = _post(client, _event(owner_id=None, email="Payer@Example.COM", credits=10))

    assert resp.get_json()["status"] == "credited"
    assert balance("user_9") == 15


def test_fields_nested_under_transaction(app, client, make_user, balance):
    make_user(credits=0)
    payload = {
        "event": "charge.success",
        "data": {
            "transaction": {
                "status": "success",
                "reference": "ref-nested",
                "amount": 1000,
                "metadata": {"clerkId": "user_1", "credits": 20},
            }
        },
    }

    resp = _post(client, payload)

    assert resp.get_json()["status"] == "credited"
    assert balance() == 20
    with app.app_context():
        assert Payment.query.filter_by(reference="ref-nested").one().currency == "USD"


def test_unknown_payer_is_kept_unprocessed(app, client, balance):
    resp = _post(client, _event(owner_id="ghost"))

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "unmatched"
    assert _payment(app)["processed"] is False


def test_zero_credits_is_kept_unprocessed(app, client, make_user, balance):
    make_user(credits=0)

    resp = _post(client, _event(credits=0))

    assert resp.get_json()["status"] == "unmatched"
    assert _payment(app)["processed"] is False
    assert balance() == 0


def test_non_success_is_recorded_without_credit(app, client, make_user, balance):
    make_user(credits=0)

    resp = _post(client, _event(status="failed"))

    assert resp.get_json()["status"] == "recorded"
    assert _payment(app) == {"processed": False, "status": "failed", "credits": 50, "owner_id": "user_1"}
    assert balance() == 0


def test_later_success_after_failure_credits(app, client, make_user, balance):
    make_user(credits=0)

    _post(client, _event(status="abandoned"))
    resp = _post(client, _event(status="success"))

    assert resp.get_json()["status"] == "credited"
    assert balance() == 50


# ── malformed events ────────────────────────────────────────

def test_event_without_data_is_acknowledged(app, client):
    resp = _post(client, {"event": "ping"})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ignored"
    with app.app_context():
        assert Payment.query.count() == 0


def test_missing_reference_is_400(client):
    payload = _event()
    del payload["data"]["reference"]
    assert _post(client, payload).status_code == 400


def test_invalid_json_is_400(client):
    assert _post(client, b"{not json").status_code == 400


# ── manual reconciliation ───────────────────────────────────

def test_retry_unprocessed_applies_once_user_exists(app, client, make_user, balance):
    _post(client, _event(owner_id="late_user", credits=30))

    with app.app_context():
        dry = get_webhook_reconciler().retry_unprocessed(commit=False)
        assert [o.action for o in dry] == ["unmatched"]

    make_user("late_user", credits=0)

    with app.app_context():
        reconciler = get_webhook_reconciler()
        dry = reconciler.retry_unprocessed(commit=False)
        assert [(o.action, o.credited) for o in dry] == [("credited", 30)]
        assert Payment.query.one().processed is False

        applied = reconciler.retry_unprocessed(commit=True)
        assert [o.action for o in applied] == ["credited"]
        assert reconciler.retry_unprocessed(commit=True) == []

    assert balance("late_user") == 30


# ── extraction ──────────────────────────────────────────────

def test_extraction_reads_metadata_string():
    fields = extract_payment_fields({
        "status": "Success",
        "reference": " ref-2 ",
        "amount": "2500",
        "metadata": json.dumps({"owner_id": "u-7", "credits": "15", "email": "A@B.io"}),
    })
    assert fields.reference == "ref-2"
    assert fields.is_success
    assert fields.amount == 2500
    assert fields.currency == "USD"
    assert fields.owner_id == "u-7"
    assert fields.email == "a@b.io"
    assert fields.credits == 15


@pytest.mark.parametrize(
    "meta, expected",
    [
        ({"ownerId": "a", "owner_id": "b", "clerkId": "c"}, "a"),
        ({"owner_id": "b", "clerkId": "c"}, "b"),
        ({"clerkId": "c"}, "c"),
        ({}, None),
    ],
)
def test_owner_id_rule_order(meta, expected):
    assert extract_payment_fields({"reference": "r", "metadata": meta}).owner_id == expected
