"""Authorize.Net-style adapter over the JSON API.

Tokenization mirrors Accept.js (securePaymentContainerRequest with the public
client key); charges use the opaque data descriptor/value pair.
"""

import json
import uuid
from datetime import timedelta
from decimal import Decimal

import requests
from requests import RequestException

from bloom.domain.errors import PaymentDeclined, PaymentSystemUnavailable
from bloom.domain.money import to_money
from bloom.domain.types import (
    CardFields,
    ChargeResult,
    PaymentSource,
    PaymentToken,
    RefundResult,
    StoredPaymentMethod,
)
from bloom.services.payments.port import PaymentGateway
from bloom.utils.clock import utcnow
from bloom.utils.retry import http_retry
from bloom.utils.settings import (
    AUTHORIZENET_API_URL,
    AUTHORIZENET_CLIENT_KEY,
    AUTHORIZENET_LOGIN_ID,
    AUTHORIZENET_PORTAL_URL,
    AUTHORIZENET_TRANSACTION_KEY,
    HTTP_TIMEOUT_SECONDS,
    PAYMENT_TOKEN_TTL_SECONDS,
)
from bloom.utils.logging import get_logger

logger = get_logger(__name__)

DATA_DESCRIPTOR = "COMMON.ACCEPT.INAPP.PAYMENT"

APPROVED = "1"

#duplicate transaction: an identical request already went through inside the window
DUPLICATE_ERROR = "11"


class AuthorizeNetGateway(PaymentGateway):
    processor = "authorizenet"

    def __init__(
        self,
        login_id: str | None = None,
        transaction_key: str | None = None,
        client_key: str | None = None,
        api_url: str | None = None,
        portal_url: str | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.login_id = login_id or AUTHORIZENET_LOGIN_ID
        self.transaction_key = transaction_key or AUTHORIZENET_TRANSACTION_KEY
        self.public_client_key = client_key or AUTHORIZENET_CLIENT_KEY
        self.api_url = api_url or AUTHORIZENET_API_URL
        self.portal_url = portal_url or AUTHORIZENET_PORTAL_URL
        self.timeout = timeout

    def _auth(self) -> dict:
        return {"name": self.login_id, "transactionKey": self.transaction_key}

    def _send_once(self, payload: dict) -> requests.Response:
        return requests.post(self.api_url, json=payload, timeout=self.timeout)

    @http_retry()
    def _send(self, payload: dict) -> requests.Response:
        return self._send_once(payload)

    def _call(self, payload: dict, retry: bool = True) -> dict:
        request_name = next(iter(payload))
        try:
            #money-moving requests go out once, a resend inside the duplicate window is refused
            resp = self._send(payload) if retry else self._send_once(payload)
        except RequestException as e:
            logger.warning(f"Authorize.Net {request_name} transport error: {type(e).__name__}")
            raise PaymentSystemUnavailable()

        if resp.status_code != 200:
            logger.warning(f"Authorize.Net {request_name} HTTP {resp.status_code}")
            raise PaymentSystemUnavailable()

        try:
            #responses start with a UTF-8 BOM
            body = json.loads(resp.content.decode("utf-8-sig"))
        except ValueError:
            logger.warning(f"Authorize.Net {request_name} returned non-JSON")
            raise PaymentSystemUnavailable()
        if not isinstance(body, dict):
            raise PaymentSystemUnavailable()
        return body

    @staticmethod
    def _ok(body: dict) -> bool:
        return (body.get("messages") or {}).get("resultCode") == "Ok"

    @staticmethod
    def _first_code(body: dict) -> str | None:
        messages = (body.get("messages") or {}).get("message") or []
        return messages[0].get("code") if messages else None

    def client_key(self) -> dict:
        return {"key": self.public_client_key, "login_id": self.login_id}

    def _request_token(self, card: CardFields) -> PaymentToken:
        body = self._call(
            {
                "securePaymentContainerRequest": {
                    "merchantAuthentication": {
                        "name": self.login_id,
                        "clientKey": self.public_client_key,
                    },
                    "data": {
                        "type": "TOKEN",
                        "id": str(uuid.uuid4()),
                        "token": {
                            "cardNumber": card.number,
                            "expirationDate": f"{card.exp_month:02d}{card.exp_year % 100:02d}",
                            "cardCode": card.cvv,
                        },
                    },
                }
            }
        )

        opaque = body.get("opaqueData") or {}
        if not self._ok(body) or not opaque.get("dataValue"):
            code = self._first_code(body)
            logger.info(f"Authorize.Net tokenization refused: {code}")
            raise PaymentDeclined(code or "card_error")

        return PaymentToken(
            value=opaque["dataValue"],
            processor=self.processor,
            expires_at=utcnow() + timedelta(seconds=PAYMENT_TOKEN_TTL_SECONDS),
        )

    def charge(self, source: PaymentSource, amount: Decimal, idempotency_key: str) -> ChargeResult:
        transaction = {
            "transactionType": "authCaptureTransaction",
            "amount": str(to_money(amount)),
        }
        if isinstance(source, StoredPaymentMethod):
            transaction["profile"] = {
                "customerProfileId": source.customer_ref,
                "paymentProfile": {"paymentProfileId": source.payment_ref},
            }
        else:
            transaction["payment"] = {
                "opaqueData": {"dataDescriptor": DATA_DESCRIPTOR, "dataValue": source.value}
            }

        body = self._call(
            {
                "createTransactionRequest": {
                    "merchantAuthentication": self._auth(),
                    #refId max 20 chars; duplicate window catches resubmits
                    "refId": idempotency_key[-20:],
                    "transactionRequest": transaction,
                }
            },
            retry=False,
        )

        tx = body.get("transactionResponse")
        if not isinstance(tx, dict) or not tx.get("responseCode"):
            logger.warning(f"Authorize.Net charge without transactionResponse: {self._first_code(body)}")
            raise PaymentSystemUnavailable()

        account = tx.get("accountNumber") or ""
        last4 = account[-4:] if account else None
        if tx["responseCode"] == APPROVED:
            return ChargeResult(success=True, charge_id=tx.get("transId"), last4=last4)

        errors = tx.get("errors") or []
        reason = errors[0].get("errorCode") if errors else f"response_code_{tx['responseCode']}"
        if reason == DUPLICATE_ERROR:
            #earlier attempt may have captured, outcome unknown
            logger.warning("Authorize.Net reported a duplicate charge, outcome unknown")
            raise PaymentSystemUnavailable()
        logger.info(f"Authorize.Net charge declined: {reason}")
        return ChargeResult(success=False, charge_id=tx.get("transId"), last4=last4, declined_reason=reason)

    def refund(self, charge_id: str, amount: Decimal, last4: str | None = None) -> RefundResult:
        body = self._call(
            {
                "createTransactionRequest": {
                    "merchantAuthentication": self._auth(),
                    "transactionRequest": {
                        "transactionType": "refundTransaction",
                        "amount": str(to_money(amount)),
                        "payment": {
                            "creditCard": {
                                "cardNumber": last4 or "XXXX",
                                "expirationDate": "XXXX",
                            }
                        },
                        "refTransId": charge_id,
                    },
                }
            },
            retry=False,
        )
        tx = body.get("transactionResponse") or {}
        if tx.get("responseCode") == APPROVED:
            return RefundResult(success=True, refund_id=tx.get("transId"))
        errors = tx.get("errors") or []
        return RefundResult(
            success=False,
            failure_reason=errors[0].get("errorCode") if errors else self._first_code(body),
        )

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        body = self._call(
            {
                "getHostedProfilePageRequest": {
                    "merchantAuthentication": self._auth(),
                    "customerProfileId": customer_ref,
                    "hostedProfileSettings": {
                        "setting": [
                            {"settingName": "hostedProfileReturnUrl", "settingValue": return_url}
                        ]
                    },
                }
            }
        )
        if not self._ok(body) or not body.get("token"):
            logger.warning(f"Authorize.Net hosted profile failed: {self._first_code(body)}")
            raise PaymentSystemUnavailable()
        return f"{self.portal_url}?token={body['token']}"
