# bloom/services/florist_client.py
import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List

import requests
from requests import RequestException
from requests.auth import HTTPBasicAuth

from bloom.data.models.order import OrderModel
from bloom.domain.errors import FulfillmentRejected, FulfillmentUnavailable
from bloom.domain.money import to_money
from bloom.domain.types import DeliveryDate, FulfillmentAck, PriceCheck
from bloom.utils.retry import http_retry
from bloom.utils.settings import (
    FLORIST_API_URL,
    FLORIST_API_KEY,
    FLORIST_API_PASSWORD,
    HTTP_TIMEOUT_SECONDS,
)
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


class MalformedResponse(Exception):
    pass


def _parse_date(value: str) -> date:
    #network sends YYYY-MM-DD, older endpoints MM/DD/YYYY
    for fmt in ("%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except (TypeError, ValueError):
            continue
    raise MalformedResponse(f"bad date {value!r}")


def _amount(payload: dict, *keys: str) -> Decimal | None:
    for key in keys:
        value = payload.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return to_money(value)
        except (InvalidOperation, TypeError, ValueError):
            raise MalformedResponse(f"bad amount in {key}")
    return None


class FloristClient:
    """
    HTTP client for the florist fulfillment network.
    Returns typed values only, raw JSON stays in here.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        api_password: str | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.base_url = (base_url or FLORIST_API_URL).rstrip("/")
        self.auth = HTTPBasicAuth(api_key or FLORIST_API_KEY, api_password or FLORIST_API_PASSWORD)
        self.timeout = timeout

    @http_retry()
    def _get(self, path: str, params: dict) -> dict:
        url = f"{self.base_url}/{path}"
        logger.info(f"FloristClient GET {url}")

        resp = requests.get(url, params=params, auth=self.auth, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise MalformedResponse("expected JSON object")
        return data

    def get_delivery_dates(self, zip_code: str) -> List[DeliveryDate]:
        """
        Raises RequestException / MalformedResponse - the resolver decides what they mean.
        An empty list means the ZIP is valid but not serviceable.
        """
        data = self._get("flowershop/checkdeliverydate", {"zipcode": zip_code})

        if data.get("error"):
            raise MalformedResponse(str(data["error"]))

        raw_dates = data.get("delivery_dates")
        if not isinstance(raw_dates, list):
            raise MalformedResponse("delivery_dates missing")

        dates = []
        for raw in raw_dates:
            if not isinstance(raw, dict) or "delivery_date" not in raw:
                raise MalformedResponse("bad delivery date entry")
            fee = _amount(raw, "delivery_charge")
            if fee is None:
                raise MalformedResponse("delivery_charge missing")
            dates.append(
                DeliveryDate(
                    date=_parse_date(raw["delivery_date"]),
                    fee=fee,
                    available=bool(raw.get("available", False)),
                )
            )
        return dates

    def get_total(self, products: List[dict], zip_code: str, delivery_date: date) -> PriceCheck:
        """
        products: [{"code": ..., "price": Decimal, "quantity": int}]
        """
        payload = []
        for p in products:
            for _ in range(p.get("quantity", 1)):
                payload.append(
                    {
                        "CODE": p["code"],
                        "PRICE": float(p["price"]),
                        "DELIVERYDATE": delivery_date.isoformat(),
                        "RECIPIENT": {"ZIPCODE": zip_code},
                    }
                )

        try:
            data = self._get("flowershop/gettotal", {"products": json.dumps(payload)})
        except (RequestException, ValueError) as e:
            #ValueError covers a non-JSON body
            logger.warning(f"get-total failed for {zip_code}/{delivery_date}: {e}")
            raise FulfillmentUnavailable("get-total unavailable")

        if data.get("error"):
            logger.warning(f"get-total error for {zip_code}/{delivery_date}: {data['error']}")
            raise FulfillmentUnavailable("get-total returned an error")

        try:
            subtotal = _amount(data, "SUBTOTAL")
            delivery = _amount(data, "FLORISTONEDELIVERYCHARGE", "DELIVERYCHARGETOTAL")
            tax = _amount(data, "FLORISTONETAX", "TAXTOTAL")
            order_total = _amount(data, "ORDERTOTAL")
        except MalformedResponse as e:
            logger.warning(f"get-total malformed: {e}")
            raise FulfillmentUnavailable("get-total malformed")

        if subtotal is None or delivery is None or delivery <= 0:
            raise FulfillmentUnavailable("get-total missing subtotal or delivery charge")

        return PriceCheck(
            subtotal=subtotal,
            delivery_fee=delivery,
            tax=tax or Decimal("0.00"),
            order_total=order_total,
        )

    def get_product(self, code: str) -> dict:
        try:
            data = self._get("flowershop/getproducts", {"code": code})
        except (RequestException, ValueError) as e:
            logger.warning(f"product lookup failed for {code}: {e}")
            raise FulfillmentUnavailable("product lookup unavailable")

        products = data.get("PRODUCTS") or []
        if not products:
            raise LookupError(f"Product {code} not found")

        product = products[0]
        try:
            price = to_money(product["PRICE"])
        except (KeyError, InvalidOperation, TypeError, ValueError):
            raise FulfillmentUnavailable("product lookup malformed")

        return {"code": product.get("CODE", code), "name": product.get("NAME", code), "price": price}

    def place_order(self, order: OrderModel) -> FulfillmentAck:
        """
        Submit an already-charged order.
        Not retried here - the orchestrator owns the retry budget.
        """
        customer = {
            "NAME": order.customer_name,
            "EMAIL": order.customer_email,
            "ADDRESS1": order.billing_address1,
            "ADDRESS2": order.billing_address2 or "",
            "CITY": order.billing_city,
            "STATE": order.billing_state,
            "COUNTRY": "US",
            "PHONE": order.customer_phone,
            "ZIPCODE": order.billing_zip,
        }
        products = []
        for item in order.items:
            for _ in range(item.quantity):
                products.append(
                    {
                        "CODE": item.product_code,
                        "PRICE": float(item.price),
                        "DELIVERYDATE": item.delivery_date.isoformat(),
                        "CARDMESSAGE": item.card_message,
                        "SPECIALINSTRUCTIONS": item.special_instructions or "",
                        "RECIPIENT": {
                            "NAME": item.recipient_name,
                            "INSTITUTION": item.recipient_institution or "",
                            "ADDRESS1": item.address1,
                            "ADDRESS2": item.address2 or "",
                            "CITY": item.city,
                            "STATE": item.state,
                            "COUNTRY": "US",
                            "PHONE": item.recipient_phone,
                            "ZIPCODE": item.zip,
                        },
                    }
                )

        body = {
            "customer": json.dumps(customer),
            "products": json.dumps(products),
            "payment": json.dumps(
                {"PROCESSOR": order.payment_processor, "REFERENCE": order.charge_id}
            ),
            "ordertotal": float(order.total),
            #lets the network dedupe our own retries
            "externalid": order.idempotency_key,
        }

        url = f"{self.base_url}/flowershop/placeorder"
        logger.info(f"FloristClient POST {url} order={order.id}")

        try:
            resp = requests.post(url, json=body, auth=self.auth, timeout=self.timeout)
        except RequestException as e:
            logger.warning(f"placeorder transport error for order {order.id}: {e}")
            raise FulfillmentUnavailable("placeorder unavailable")

        if resp.status_code >= 500 or resp.status_code in (401, 403, 429):
            logger.warning(f"placeorder HTTP {resp.status_code} for order {order.id}")
            raise FulfillmentUnavailable(f"placeorder HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            raise FulfillmentUnavailable("placeorder returned non-JSON")
        if not isinstance(data, dict):
            raise FulfillmentUnavailable("placeorder returned non-object")

        if resp.status_code >= 400 or data.get("error") or data.get("SUCCESS") is False:
            #structured refusal of the order content
            logger.error(f"placeorder rejected order {order.id}: {data.get('error')}")
            raise FulfillmentRejected(str(data.get("error") or f"HTTP {resp.status_code}"))

        confirmation = data.get("CONFIRMATIONNUMBER") or data.get("ORDERID")
        if not confirmation:
            raise FulfillmentUnavailable("placeorder response without confirmation")

        order_no = data.get("ORDERNO")
        return FulfillmentAck(
            confirmation_id=str(confirmation),
            order_number=str(order_no) if order_no is not None else None,
        )

    def get_order_status(self, confirmation_id: str) -> str:
        data = self._get("flowershop/getorderinfo", {"orderno": confirmation_id})
        return str(data.get("STATUS", "")).lower()
