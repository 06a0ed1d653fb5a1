"""Payment capture behind a small provider interface.

The ledger only ever sees a :class:`Receipt`; provider-specific payloads stay
in this module. PayPal is the one real provider: the browser completes the
checkout, and the backend confirms the order through the REST API before a
pledge is marked completed.

Typical usage::

    provider = build_payment_provider(settings)
    receipt = provider.capture_payment("5O190127TN364715T", Decimal("8.00"))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol

import httpx

from .config import Settings
from .errors import PaymentDeclinedError, PaymentError

logger = logging.getLogger(__name__)

PAYPAL_LIVE_URL = "https://api-m.paypal.com"
PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"


@dataclass(frozen=True)
class Receipt:
    """Proof of a captured payment."""

    amount: Decimal
    external_id: str
    provider: str


class PaymentProvider(Protocol):
    name: str

    def capture_payment(self, reference: str, expected_amount: Decimal) -> Receipt:
        """Confirm the payment identified by ``reference``.

        Raises PaymentDeclinedError when the payment is not captured or its
        amount differs from ``expected_amount``, and PaymentError when the
        provider could not be reached.
        """
        ...


class PayPalProvider:
    """Confirms PayPal checkout orders via the Orders v2 API."""

    name = "paypal"

    def __init__(self, client_id: str, client_secret: str, mode: str = "sandbox",
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_LIVE_URL if mode == "live" else PAYPAL_SANDBOX_URL
        self.timeout = timeout
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )

    def _get_access_token(self, client: httpx.Client) -> str:
        if self._access_token and time.monotonic() < self._token_expiry:
            return self._access_token

        resp = client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        resp.raise_for_status()
        data = resp.json()
        self._access_token = data["access_token"]
        # refresh a minute before PayPal expires it
        self._token_expiry = time.monotonic() + int(data.get("expires_in", 0)) - 60
        return self._access_token

    @staticmethod
    def _order_amount(order: dict) -> Decimal:
        try:
            return Decimal(order["purchase_units"][0]["amount"]["value"])
        except (KeyError, IndexError, TypeError, InvalidOperation) as e:
            raise PaymentError("PayPal order has no readable amount") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def capture_payment(self, reference: str, expected_amount: Decimal) -> Receipt:
        try:
            with self._client() as client:
                token = self._get_access_token(client)
                resp = client.get(
                    f"/v2/checkout/orders/{reference}",
                    headers={"Authorization": f"Bearer {token}"},
                )
                resp.raise_for_status()
                order = resp.json()
        except httpx.HTTPError as e:
            logger.warning("PayPal verification failed for order %s: %s", reference, e)
            raise PaymentError("Failed to verify PayPal payment") from e

        if order.get("status") != "COMPLETED":
            raise PaymentDeclinedError(f"PayPal order not completed (status {order.get('status')})")

        amount = self._order_amount(order)
        if amount != expected_amount:
            raise PaymentDeclinedError("Captured amount does not match the pledge amount")

        return Receipt(amount=amount, external_id=order.get("id", reference), provider=self.name)


def build_payment_provider(settings: Settings) -> Optional[PaymentProvider]:
    """Provider selected by PAYMENT_PROVIDER, or None when payments are off."""
    if settings.payment_provider == "paypal":
        if not settings.paypal_client_id or not settings.paypal_client_secret:
            raise RuntimeError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET must be configured.")
        return PayPalProvider(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            mode=settings.paypal_mode,
            timeout=settings.db_timeout_seconds,
        )
    if settings.payment_provider:
        raise RuntimeError(f"Unknown PAYMENT_PROVIDER '{settings.payment_provider}'")
    return None


def capture(provider: Optional[PaymentProvider], reference: str, expected_amount: Decimal) -> Receipt:
    if provider is None:
        raise PaymentError("No payment provider is configured")
    return provider.capture_payment(reference, expected_amount)
