"""
Missing-order recovery tests.

The webhook path and the operator recovery path must converge on the same
single order whichever runs first.
"""

from roastery.extensions import db
from roastery.models import Order, Payment, ProcessorEvent
from roastery.services import payment_service, reconciliation_service

from conftest import checkout_payload, make_event, post_webhook


def _succeeded_intent(client, fake_stripe):
    resp = client.post("/api/checkout/payment-intent", json=checkout_payload())
    return fake_stripe.succeed(resp.get_json()["intentId"])


def _recover(client, headers, intent_id):
    return client.post(
        "/api/payments/recover-missing",
        json={"paymentIntentId": intent_id},
        headers=headers,
    )


def _counts():
    return db.session.query(Order).count(), db.session.query(Payment).count()


class TestConvergence:
    def test_recovery_then_webhook(self, client, fake_stripe, manager_headers):
        intent = _succeeded_intent(client, fake_stripe)

        recovered = _recover(client, manager_headers, intent["id"])
        webhook = post_webhook(client, make_event("payment_intent.succeeded", intent))

        assert recovered.status_code == 200
        assert recovered.get_json()["outcome"] == "created"
        assert webhook.status_code == 200
        assert webhook.get_json()["outcome"] == "duplicate"
        assert webhook.get_json()["orderId"] == recovered.get_json()["orderId"]
        assert _counts() == (1, 1)

    def test_webhook_then_recovery(self, client, fake_stripe, manager_headers):
        intent = _succeeded_intent(client, fake_stripe)

        webhook = post_webhook(client, make_event("payment_intent.succeeded", intent))
        recovered = _recover(client, manager_headers, intent["id"])

        assert webhook.get_json()["outcome"] == "created"
        assert recovered.status_code == 200
        assert recovered.get_json()["outcome"] == "duplicate"
        assert recovered.get_json()["message"] == "Order already exists for this payment"
        assert _counts() == (1, 1)

    def test_recovery_twice(self, client, fake_stripe, admin_headers):
        intent = _succeeded_intent(client, fake_stripe)

        _recover(client, admin_headers, intent["id"])
        second = _recover(client, admin_headers, intent["id"])

        assert second.get_json()["outcome"] == "duplicate"
        assert _counts() == (1, 1)

    def test_both_paths_build_the_same_order(self, client, fake_stripe, manager_headers):
        a = _succeeded_intent(client, fake_stripe)
        b = _succeeded_intent(client, fake_stripe)

        post_webhook(client, make_event("payment_intent.succeeded", a))
        _recover(client, manager_headers, b["id"])

        fields = ("total_cents", "subtotal_cents", "tax_cents", "shipping_cents", "status", "customer_email")
        by_intent = {o.stripe_payment_intent_id: o for o in db.session.query(Order).all()}
        assert [getattr(by_intent[a["id"]], f) for f in fields] == [getattr(by_intent[b["id"]], f) for f in fields]
        assert len(by_intent[a["id"]].items) == len(by_intent[b["id"]].items) == 2

    def test_recovery_is_recorded(self, client, fake_stripe, manager_headers):
        intent = _succeeded_intent(client, fake_stripe)
        _recover(client, manager_headers, intent["id"])

        event = db.session.query(ProcessorEvent).one()
        assert event.event_type == "manual.recover_missing"
        assert event.payment_intent_id == intent["id"]
        assert event.outcome == "created"


class TestRecoveryErrors:
    def test_not_succeeded_is_409(self, client, fake_stripe, manager_headers):
        result = payment_service.create_intent(4999, "aed")

        resp = _recover(client, manager_headers, result["intent_id"])

        assert resp.status_code == 409
        assert resp.get_json()["status"] == "requires_payment_method"
        assert _counts() == (0, 0)

    def test_missing_intent_id(self, client, manager_headers):
        assert client.post("/api/payments/recover-missing", json={}, headers=manager_headers).status_code == 400

    def test_unknown_intent_is_upstream_failure(self, client, fake_stripe, manager_headers):
        resp = _recover(client, manager_headers, "pi_does_not_exist")
        assert resp.status_code == 502

    def test_service_raises_for_canceled(self, db_session, fake_stripe):
        result = payment_service.create_intent(4999, "aed")
        fake_stripe.intents[result["intent_id"]]["status"] = "canceled"

        try:
            reconciliation_service.recover_missing(result["intent_id"])
        except reconciliation_service.IntentNotSucceeded as exc:
            assert exc.status == "canceled"
        else:
            raise AssertionError("expected IntentNotSucceeded")


class TestInspection:
    def test_inspect_before_and_after(self, client, fake_stripe, manager_headers):
        intent = _succeeded_intent(client, fake_stripe)
        url = f"/api/payments/recover-missing?paymentIntentId={intent['id']}"

        before = client.get(url, headers=manager_headers).get_json()
        assert before["stripe"]["status"] == "succeeded"
        assert before["stripe"]["customer"]["email"] == "layla@example.com"
        assert before["database"]["order_exists"] is False

        _recover(client, manager_headers, intent["id"])

        after = client.get(url, headers=manager_headers).get_json()
        assert after["database"]["order_exists"] is True
        assert after["database"]["payment"]["status"] == "succeeded"

    def test_check_incomplete(self, client, fake_stripe, manager_headers):
        abandoned = payment_service.create_intent(1000, "aed")
        lost = _succeeded_intent(client, fake_stripe)
        delivered = _succeeded_intent(client, fake_stripe)
        post_webhook(client, make_event("payment_intent.succeeded", delivered))

        resp = client.get("/api/payments/check-incomplete?days=7", headers=manager_headers)

        assert resp.status_code == 200
        data = resp.get_json()
        ids = {i["id"]: i for i in data["intents"]}
        assert set(ids) == {abandoned["intent_id"], lost["id"]}
        assert ids[lost["id"]]["missing_order"] is True
        assert ids[abandoned["intent_id"]]["missing_order"] is False
        assert data["summary"]["missing_orders"] == 1
        assert data["summary"]["by_status"] == {"requires_payment_method": 1, "succeeded": 1}

    def test_check_incomplete_rejects_bad_days(self, client, manager_headers):
        resp = client.get("/api/payments/check-incomplete?days=abc", headers=manager_headers)
        assert resp.status_code == 400


class TestRecoveryCli:
    def test_cli_recover(self, app, client, fake_stripe):
        intent = _succeeded_intent(client, fake_stripe)
        runner = app.test_cli_runner()

        first = runner.invoke(args=["payments", "recover", intent["id"]])
        second = runner.invoke(args=["payments", "recover", intent["id"]])

        assert "PASS Created order" in first.output
        assert "already exists" in second.output
        assert _counts() == (1, 1)

    def test_cli_recover_not_succeeded(self, app, db_session, fake_stripe):
        result = payment_service.create_intent(1000, "aed")
        out = app.test_cli_runner().invoke(args=["payments", "recover", result["intent_id"]])
        assert "FAIL" in out.output
        assert "requires_payment_method" in out.output
