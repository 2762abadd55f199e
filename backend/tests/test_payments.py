"""
Payment administration tests: listing, stats and refunds.
"""

import pytest

from roastery.extensions import db
from roastery.models import Payment

from conftest import checkout_payload, make_event, post_webhook


@pytest.fixture
def paid_payment(client, fake_stripe):
    resp = client.post("/api/checkout/payment-intent", json=checkout_payload())
    intent = fake_stripe.succeed(resp.get_json()["intentId"])
    post_webhook(client, make_event("payment_intent.succeeded", intent))
    return db.session.query(Payment).one()


class TestPaymentQueries:
    def test_list(self, client, paid_payment, team_headers):
        resp = client.get("/api/payments", headers=team_headers)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["pagination"]["total"] == 1
        row = data["payments"][0]
        assert row["amount"] == "49.99"
        assert row["order"]["customer_email"] == "layla@example.com"

    def test_search_by_customer(self, client, paid_payment, team_headers):
        hit = client.get("/api/payments?search=Layla", headers=team_headers).get_json()
        miss = client.get("/api/payments?search=nobody", headers=team_headers).get_json()
        assert hit["pagination"]["total"] == 1
        assert miss["pagination"]["total"] == 0

    def test_filter_unknown_status(self, client, paid_payment, team_headers):
        assert client.get("/api/payments?status=failed", headers=team_headers).status_code == 400

    def test_detail(self, client, paid_payment, team_headers):
        resp = client.get(f"/api/payments/{paid_payment.id}", headers=team_headers)
        assert resp.get_json()["payment"]["last4"] == "4242"

    def test_detail_not_found(self, client, team_headers):
        assert client.get("/api/payments/999", headers=team_headers).status_code == 404

    def test_stats(self, client, paid_payment, team_headers):
        data = client.get("/api/payments/stats", headers=team_headers).get_json()
        assert data["total_payments"] == 1
        assert data["by_status"] == {"succeeded": 1}
        assert data["gross_revenue_cents"] == 4999
        assert data["net_revenue_cents"] == 4999


class TestRefunds:
    def _refund(self, client, payment, headers, amount):
        return client.post(f"/api/payments/{payment.id}/refund", json={"amount": amount}, headers=headers)

    def test_partial_then_full(self, client, fake_stripe, paid_payment, manager_headers):
        first = self._refund(client, paid_payment, manager_headers, 1000)
        assert first.status_code == 200
        assert first.get_json()["payment"]["status"] == "partially_refunded"
        assert first.get_json()["refund"]["amount_cents"] == 1000

        second = self._refund(client, paid_payment, manager_headers, 3999)
        assert second.get_json()["payment"]["status"] == "refunded"
        assert second.get_json()["payment"]["order"]["status"] == "REFUNDED"
        assert [r["amount"] for r in fake_stripe.refunds] == [1000, 3999]

    def test_exceeding_remaining(self, client, fake_stripe, paid_payment, manager_headers):
        resp = self._refund(client, paid_payment, manager_headers, 5000)
        assert resp.status_code == 409
        assert fake_stripe.refunds == []

    @pytest.mark.parametrize("amount", [0, -5, "ten", None])
    def test_invalid_amount(self, client, fake_stripe, paid_payment, manager_headers, amount):
        assert self._refund(client, paid_payment, manager_headers, amount).status_code == 400

    def test_refund_after_full_refund(self, client, fake_stripe, paid_payment, manager_headers):
        self._refund(client, paid_payment, manager_headers, 4999)
        assert self._refund(client, paid_payment, manager_headers, 1).status_code == 409

    def test_upstream_failure(self, client, fake_stripe, paid_payment, manager_headers):
        fake_stripe.fail = True
        resp = self._refund(client, paid_payment, manager_headers, 100)
        assert resp.status_code == 502
        db.session.expire_all()
        assert db.session.get(Payment, paid_payment.id).refunded_cents == 0

    def test_webhook_after_refund_is_duplicate(self, client, fake_stripe, paid_payment, manager_headers):
        self._refund(client, paid_payment, manager_headers, 1000)
        charge = dict(fake_stripe.charges[paid_payment.stripe_charge_id], amount_refunded=1000)

        resp = post_webhook(client, make_event("charge.refunded", charge))

        assert resp.get_json()["outcome"] == "duplicate"
