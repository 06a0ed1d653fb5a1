"""Tests for PayPalProvider and provider selection (pledgr.payments).

The PayPal REST API is replaced with ``httpx.MockTransport``.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from pledgr.errors import PaymentDeclinedError, PaymentError
from pledgr.payments import PAYPAL_SANDBOX_URL, PayPalProvider, build_payment_provider, capture


def _paypal(orders: dict, token_calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            token_calls.append(request.headers.get("authorization"))
            return httpx.Response(200, json={"access_token": "A21AA", "expires_in": 32400})
        if request.url.path.startswith("/v2/checkout/orders/"):
            assert request.headers["authorization"] == "Bearer A21AA"
            order_id = request.url.path.rsplit("/", 1)[-1]
            if order_id not in orders:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            return httpx.Response(200, json=orders[order_id])
        return httpx.Response(500)

    return httpx.MockTransport(handler)


def _order(order_id, status="COMPLETED", value="8.00"):
    return {
        "id": order_id,
        "status": status,
        "purchase_units": [{"amount": {"value": value, "currency_code": "USD"}}],
    }


@pytest.fixture
def token_calls():
    return []


@pytest.fixture
def paypal(token_calls):
    orders = {
        "OK-1": _order("OK-1"),
        "OK-2": _order("OK-2", value="25.00"),
        "PENDING": _order("PENDING", status="APPROVED"),
        "BROKEN": {"id": "BROKEN", "status": "COMPLETED", "purchase_units": []},
    }
    return PayPalProvider("client", "secret", transport=_paypal(orders, token_calls))


class TestPayPalProvider:
    @pytest.mark.unit
    def test_completed_order_gives_receipt(self, paypal, token_calls):
        receipt = paypal.capture_payment("OK-1", Decimal("8.00"))
        assert receipt.amount == Decimal("8.00")
        assert receipt.external_id == "OK-1"
        assert receipt.provider == "paypal"
        assert token_calls[0].startswith("Basic ")

    @pytest.mark.unit
    def test_token_is_reused(self, paypal, token_calls):
        paypal.capture_payment("OK-1", Decimal("8.00"))
        paypal.capture_payment("OK-2", Decimal("25.00"))
        assert len(token_calls) == 1

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "order_id, amount",
        [
            ("PENDING", "8.00"),     # not completed
            ("OK-1", "9.00"),        # amount mismatch
            ("MISSING", "8.00"),     # 404 from PayPal
            ("BROKEN", "8.00"),      # unreadable amount
        ],
    )
    def test_failures(self, paypal, order_id, amount):
        with pytest.raises(PaymentError):
            paypal.capture_payment(order_id, Decimal(amount))

    @pytest.mark.unit
    def test_refusals_are_declines_but_transport_errors_are_not(self, paypal):
        with pytest.raises(PaymentDeclinedError):
            paypal.capture_payment("PENDING", Decimal("8.00"))
        with pytest.raises(PaymentDeclinedError):
            paypal.capture_payment("OK-1", Decimal("9.00"))

        with pytest.raises(PaymentError) as info:
            paypal.capture_payment("MISSING", Decimal("8.00"))
        assert not isinstance(info.value, PaymentDeclinedError)

    @pytest.mark.unit
    def test_live_and_sandbox_urls(self):
        assert PayPalProvider("a", "b").base_url == PAYPAL_SANDBOX_URL
        assert PayPalProvider("a", "b", mode="live").base_url == "https://api-m.paypal.com"


class TestBuildProvider:
    @pytest.mark.unit
    def test_none_when_unconfigured(self, settings):
        assert build_payment_provider(settings) is None
        with pytest.raises(PaymentError):
            capture(None, "OK-1", Decimal("8.00"))

    @pytest.mark.unit
    def test_paypal(self, settings):
        provider = build_payment_provider(
            replace(settings, payment_provider="paypal", paypal_client_id="id", paypal_client_secret="s")
        )
        assert isinstance(provider, PayPalProvider)

    @pytest.mark.unit
    def test_misconfigured(self, settings):
        with pytest.raises(RuntimeError):
            build_payment_provider(replace(settings, payment_provider="paypal"))
        with pytest.raises(RuntimeError):
            build_payment_provider(replace(settings, payment_provider="stripe"))
