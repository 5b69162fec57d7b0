"""
HTTP-level tests for the CloudPayments webhook endpoint (signature, body formats, response codes).
"""

import json
from urllib.parse import urlencode

from app.models.subscription import UserSubscription

from conftest import sign

URL = "/api/webhooks/cloudpayments"


def _post_json(client, kind, payload, signature=None):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json", "Content-HMAC": signature or sign(body)}
    return client.post(URL, params={"type": kind}, content=body, headers=headers)


def _post_form(client, kind, payload, header="Content-HMAC"):
    body = urlencode(payload).encode()
    headers = {"Content-Type": "application/x-www-form-urlencoded", header: sign(body)}
    return client.post(URL, params={"type": kind}, content=body, headers=headers)


class TestWebhookSignature:
    def test_bad_signature_is_401(self, client, db, make_user):
        user = make_user()
        resp = _post_json(client, "pay", {"TransactionId": "1", "AccountId": str(user.id)}, signature="bm9wZQ==")

        assert resp.status_code == 401
        assert resp.json() == {"code": 13}
        assert db.query(UserSubscription).count() == 0

    def test_missing_signature_is_401(self, client):
        resp = client.post(URL, params={"type": "check"}, content=b"AccountId=1")
        assert resp.status_code == 401

    def test_signature_over_different_body_is_401(self, client):
        signature = sign(b"Amount=1")
        resp = client.post(
            URL,
            params={"type": "check"},
            content=b"Amount=1999",
            headers={"Content-Type": "application/x-www-form-urlencoded", "Content-HMAC": signature},
        )
        assert resp.status_code == 401

    def test_alternate_header_name(self, client, make_user):
        user = make_user()
        payload = {"Amount": "1999", "Currency": "RUB", "AccountId": str(user.id), "Data": '{"planName":"basic_monthly"}'}
        resp = _post_form(client, "check", payload, header="X-Content-HMAC")
        assert resp.status_code == 200
        assert resp.json() == {"code": 0}


class TestWebhookType:
    def test_missing_type_is_400(self, client):
        body = b"{}"
        resp = client.post(URL, content=body, headers={"Content-HMAC": sign(body)})
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_unknown_type_is_400(self, client):
        body = b"{}"
        resp = client.post(URL, params={"type": "refund"}, content=body, headers={"Content-HMAC": sign(body)})
        assert resp.status_code == 400


class TestWebhookBodies:
    def test_form_check_amount_mismatch(self, client, make_user):
        user = make_user()
        payload = {"Amount": "500", "Currency": "RUB", "AccountId": str(user.id), "Data": '{"planName":"basic_monthly"}'}
        resp = _post_form(client, "check", payload)
        assert resp.status_code == 200
        assert resp.json() == {"code": 12}

    def test_json_pay_activates_subscription(self, client, db, make_user):
        user = make_user()
        payload = {
            "TransactionId": 777,
            "Amount": 1999,
            "Currency": "RUB",
            "AccountId": user.id,
            "SubscriptionId": "sc_http",
            "CardType": "Visa",
            "CardLastFour": "4242",
            "Data": json.dumps({"planName": "basic_monthly"}),
        }
        resp = _post_json(client, "pay", payload)

        assert resp.json() == {"code": 0}
        db.expire_all()
        sub = db.query(UserSubscription).one()
        assert sub.external_subscription_id == "sc_http"
        assert sub.user_id == user.id

    def test_unknown_account_returns_10(self, client):
        resp = _post_form(client, "check", {"Amount": "1999", "AccountId": "424242"})
        assert resp.json() == {"code": 10}

    def test_malformed_payload_returns_13(self, client, make_user):
        user = make_user()
        resp = _post_form(client, "recurrent", {"AccountId": str(user.id)})
        assert resp.status_code == 200
        assert resp.json() == {"code": 13}
