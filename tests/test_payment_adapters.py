import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from bloom.domain.errors import PaymentDeclined, PaymentSystemUnavailable
from bloom.domain.types import CardFields, PaymentToken, StoredPaymentMethod
from bloom.services.payments import build_gateway, get_gateway, reset_gateway, set_gateway
from bloom.services.payments.authorizenet_adapter import AuthorizeNetGateway
from bloom.services.payments.fake_adapter import FakeGateway
from bloom.services.payments.stripe_adapter import StripeGateway

CARD = CardFields(number="4242424242424242", exp_month=12, exp_year=2035, cvv="123")
TOKEN = PaymentToken(value="tok_abc", processor="stripe")


def _resp(status_code=200, body=None, raw=None):
    resp = MagicMock()
    resp.status_code = status_code
    if raw is not None:
        resp.content = raw
        resp.json.side_effect = ValueError("no json")
    else:
        resp.content = json.dumps(body).encode()
        resp.json.return_value = body
    return resp


class TestStripeGateway:
    def setup_method(self):
        self.gateway = StripeGateway(publishable_key="pk_test", secret_key="sk_test", base_url="https://stripe.test/v1")

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_tokenize_uses_publishable_key(self, post):
        post.return_value = _resp(200, {"id": "tok_1"})

        token = self.gateway.tokenize(CARD)

        assert token.value == "tok_1"
        assert token.processor == "stripe"
        assert token.expires_at is not None
        assert post.call_args.kwargs["auth"] == ("pk_test", "")

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_tokenize_refused(self, post):
        post.return_value = _resp(402, {"error": {"code": "incorrect_number"}})

        with pytest.raises(PaymentDeclined):
            self.gateway.tokenize(CARD)

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_charge_in_cents_with_idempotency_key(self, post):
        post.return_value = _resp(
            200,
            {"id": "ch_1", "status": "succeeded", "payment_method_details": {"card": {"last4": "4242"}}},
        )

        result = self.gateway.charge(TOKEN, Decimal("69.38"), idempotency_key="order-abc")

        assert result.success is True
        assert result.charge_id == "ch_1"
        assert result.last4 == "4242"
        kwargs = post.call_args.kwargs
        assert kwargs["data"]["amount"] == 6938
        assert kwargs["data"]["source"] == "tok_abc"
        assert kwargs["headers"]["Idempotency-Key"] == "order-abc"
        assert kwargs["auth"] == ("sk_test", "")
        assert kwargs["timeout"] > 0

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_charge_stored_customer(self, post):
        post.return_value = _resp(200, {"id": "ch_2", "status": "succeeded"})

        self.gateway.charge(StoredPaymentMethod("stripe", "cus_1", "card_9"), Decimal("10"), "k")

        data = post.call_args.kwargs["data"]
        assert data["customer"] == "cus_1"
        assert data["source"] == "card_9"

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_decline_is_a_result(self, post):
        post.return_value = _resp(402, {"error": {"code": "card_declined", "decline_code": "insufficient_funds"}})

        result = self.gateway.charge(TOKEN, Decimal("10.00"), "k")

        assert result.success is False
        assert result.declined_reason == "insufficient_funds"

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_server_error_is_unavailable(self, post):
        post.return_value = _resp(503, {})

        with pytest.raises(PaymentSystemUnavailable):
            self.gateway.charge(TOKEN, Decimal("10.00"), "k")

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_timeout_retried_then_unavailable(self, post):
        post.side_effect = requests.Timeout("slow")

        with pytest.raises(PaymentSystemUnavailable):
            self.gateway.charge(TOKEN, Decimal("10.00"), "k")

        assert post.call_count == 3
        for call in post.call_args_list:
            assert call.kwargs["headers"]["Idempotency-Key"] == "k"

    @patch("bloom.services.payments.stripe_adapter.requests.post")
    def test_portal_session(self, post):
        post.return_value = _resp(200, {"url": "https://billing.stripe.test/s/1"})

        assert self.gateway.create_portal_session("cus_1", "https://shop.test") == "https://billing.stripe.test/s/1"

    def test_client_key_is_publishable_only(self):
        assert self.gateway.client_key() == {"key": "pk_test"}


class TestAuthorizeNetGateway:
    def setup_method(self):
        self.gateway = AuthorizeNetGateway(
            login_id="login",
            transaction_key="txkey",
            client_key="client",
            api_url="https://anet.test/api",
            portal_url="https://anet.test/manage",
        )

    @staticmethod
    def _bom(body):
        #real responses carry a UTF-8 BOM
        return _resp(200, raw=b"\xef\xbb\xbf" + json.dumps(body).encode())

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_tokenize(self, post):
        post.return_value = self._bom(
            {"opaqueData": {"dataDescriptor": "COMMON.ACCEPT.INAPP.PAYMENT", "dataValue": "opaque-1"}, "messages": {"resultCode": "Ok"}}
        )

        token = self.gateway.tokenize(CARD)

        assert token.value == "opaque-1"
        assert token.processor == "authorizenet"
        sent = post.call_args.kwargs["json"]["securePaymentContainerRequest"]
        assert sent["merchantAuthentication"] == {"name": "login", "clientKey": "client"}
        assert sent["data"]["token"]["expirationDate"] == "1235"

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_charge_approved(self, post):
        post.return_value = self._bom(
            {"transactionResponse": {"responseCode": "1", "transId": "60001", "accountNumber": "XXXX1111"}, "messages": {"resultCode": "Ok"}}
        )

        result = self.gateway.charge(
            PaymentToken(value="opaque-1", processor="authorizenet"), Decimal("69.38"), "order-0123456789abcdefghij"
        )

        assert result.success is True
        assert result.charge_id == "60001"
        assert result.last4 == "1111"
        sent = post.call_args.kwargs["json"]["createTransactionRequest"]
        assert sent["transactionRequest"]["amount"] == "69.38"
        assert len(sent["refId"]) <= 20

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_charge_declined(self, post):
        post.return_value = self._bom(
            {"transactionResponse": {"responseCode": "2", "errors": [{"errorCode": "2"}]}, "messages": {"resultCode": "Error"}}
        )

        result = self.gateway.charge(PaymentToken(value="x", processor="authorizenet"), Decimal("5"), "k")

        assert result.success is False
        assert result.declined_reason == "2"

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_missing_transaction_response(self, post):
        post.return_value = self._bom({"messages": {"resultCode": "Error", "message": [{"code": "E00007"}]}})

        with pytest.raises(PaymentSystemUnavailable):
            self.gateway.charge(PaymentToken(value="x", processor="authorizenet"), Decimal("5"), "k")

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_charge_timeout_is_not_resent(self, post):
        post.side_effect = requests.Timeout("slow")

        with pytest.raises(PaymentSystemUnavailable):
            self.gateway.charge(PaymentToken(value="x", processor="authorizenet"), Decimal("5"), "k")

        assert post.call_count == 1

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_duplicate_transaction_is_unknown_outcome(self, post):
        #the first submit may have captured, this must not read as a decline
        post.return_value = self._bom(
            {"transactionResponse": {"responseCode": "3", "errors": [{"errorCode": "11"}]}, "messages": {"resultCode": "Error"}}
        )

        with pytest.raises(PaymentSystemUnavailable):
            self.gateway.charge(PaymentToken(value="x", processor="authorizenet"), Decimal("5"), "k")

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_tokenize_timeout_is_retried(self, post):
        post.side_effect = [
            requests.Timeout("slow"),
            self._bom({"opaqueData": {"dataValue": "opaque-2"}, "messages": {"resultCode": "Ok"}}),
        ]

        assert self.gateway.tokenize(CARD).value == "opaque-2"
        assert post.call_count == 2

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_stored_profile(self, post):
        post.return_value = self._bom({"transactionResponse": {"responseCode": "1", "transId": "7"}})

        self.gateway.charge(StoredPaymentMethod("authorizenet", "prof-1", "pay-2"), Decimal("95"), "k")

        tx = post.call_args.kwargs["json"]["createTransactionRequest"]["transactionRequest"]
        assert tx["profile"] == {"customerProfileId": "prof-1", "paymentProfile": {"paymentProfileId": "pay-2"}}

    @patch("bloom.services.payments.authorizenet_adapter.requests.post")
    def test_hosted_profile_page(self, post):
        post.return_value = self._bom({"token": "hp-token", "messages": {"resultCode": "Ok"}})

        assert self.gateway.create_portal_session("prof-1", "https://shop.test") == "https://anet.test/manage?token=hp-token"


class TestGatewayFactory:
    def teardown_method(self):
        reset_gateway()

    def test_builds_by_name(self):
        assert isinstance(build_gateway("stripe"), StripeGateway)
        assert isinstance(build_gateway("authorizenet"), AuthorizeNetGateway)
        assert isinstance(build_gateway("fake"), FakeGateway)
        with pytest.raises(ValueError):
            build_gateway("paypal")

    def test_set_gateway(self):
        fake = FakeGateway()
        set_gateway(fake)

        assert get_gateway() is fake


class TestFakeGateway:
    def test_same_key_same_result(self):
        gateway = FakeGateway()

        first = gateway.charge(TOKEN, Decimal("1"), "k")
        second = gateway.charge(TOKEN, Decimal("1"), "k")

        assert first.charge_id == second.charge_id

    def test_configured_decline(self):
        gateway = FakeGateway()
        gateway.configure(should_succeed=False, failure_reason="stolen_card")

        result = gateway.charge(TOKEN, Decimal("1"), "k")

        assert result.success is False
        assert result.declined_reason == "stolen_card"
