"""
PayPal Orders v2 client.

Environment: PAYPAL_ENV (production|sandbox) wins, otherwise APP_ENV=production
means live. Credentials are never logged, only the base URL and mode.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from fenam.core.config import settings
from fenam.core.errors import ConfigurationError, OrderAlreadyCapturedError, PaymentProviderError

logger = logging.getLogger(__name__)

PAYPAL_BASE_URL_LIVE = "https://api-m.paypal.com"
PAYPAL_BASE_URL_SANDBOX = "https://api-m.sandbox.paypal.com"


def get_paypal_base_url(live: Optional[bool] = None) -> str:
    if live is None:
        live = settings.paypal_live
    return PAYPAL_BASE_URL_LIVE if live else PAYPAL_BASE_URL_SANDBOX


@dataclass
class CaptureDetails:
    status: str
    payer_email: Optional[str] = None
    capture_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    debug_id: Optional[str] = None


def extract_capture_details(order: dict[str, Any]) -> CaptureDetails:
    """Pull status, payer email and the first capture out of an order body."""
    payer = order.get("payer") or {}
    details = CaptureDetails(
        status=order.get("status") or "UNKNOWN",
        payer_email=payer.get("email_address") or payer.get("email"),
        debug_id=order.get("debug_id"),
    )
    units = order.get("purchase_units") or []
    if units:
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        if captures:
            capture = captures[0]
            details.capture_id = capture.get("id")
            amount = capture.get("amount") or {}
            details.amount = amount.get("value")
            details.currency = amount.get("currency_code")
    if details.payer_email:
        details.payer_email = details.payer_email.strip().lower()
    return details


def _is_already_captured(response: httpx.Response) -> bool:
    if response.status_code == 422:
        return True
    return "ORDER_ALREADY_CAPTURED" in response.text.upper()


class PayPalClient:
    """Minimal async client for the order/capture flow."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = (base_url or get_paypal_base_url()).rstrip("/")
        self.timeout = timeout or settings.PAYPAL_TIMEOUT_SECONDS
        self._transport = transport
        self._access_token: Optional[str] = None

    @property
    def mode(self) -> str:
        return "live" if self.base_url == PAYPAL_BASE_URL_LIVE else "sandbox"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if self._access_token:
            return self._access_token
        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        if response.status_code != 200:
            raise PaymentProviderError(
                "PayPal authentication failed",
                status_code=response.status_code,
                debug_id=response.headers.get("paypal-debug-id"),
            )
        self._access_token = response.json()["access_token"]
        return self._access_token

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        try:
            async with self._client() as client:
                for attempt in range(2):
                    token = await self._get_access_token(client)
                    response = await client.request(
                        method,
                        path,
                        json=json,
                        headers={
                            "Authorization": f"Bearer {token}",
                            "Content-Type": "application/json",
                        },
                    )
                    if response.status_code != 401:
                        break
                    # Cached token expired: fetch a new one and retry once
                    self._access_token = None
                    logger.info(f"PayPal rejected the access token, retry {attempt + 1} for {method} {path}")
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"PayPal request failed: {e}") from e

        if response.status_code >= 400:
            debug_id = response.headers.get("paypal-debug-id")
            if path.endswith("/capture") and _is_already_captured(response):
                raise OrderAlreadyCapturedError(
                    "Order already captured",
                    status_code=response.status_code,
                    debug_id=debug_id,
                )
            raise PaymentProviderError(
                f"PayPal returned {response.status_code}",
                status_code=response.status_code,
                debug_id=debug_id,
            )
        return response.json()

    async def create_order(self, amount: float, currency: str, custom_id: Optional[str] = None) -> dict[str, Any]:
        unit: dict[str, Any] = {
            "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
            "description": "Affiliazione FENAM",
        }
        if custom_id:
            unit["custom_id"] = custom_id
        return await self._request(
            "POST",
            "/v2/checkout/orders",
            json={"intent": "CAPTURE", "purchase_units": [unit]},
        )

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", json={})

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}")

    async def capture_or_fetch(self, order_id: str) -> dict[str, Any]:
        """Capture the order; an already captured order is re-fetched instead."""
        try:
            return await self.capture_order(order_id)
        except OrderAlreadyCapturedError:
            logger.info(f"Order {order_id} already captured, fetching current state")
            return await self.get_order(order_id)


_paypal_client: Optional[PayPalClient] = None


def get_paypal_client() -> PayPalClient:
    """FastAPI dependency. Raises ConfigurationError without credentials."""
    global _paypal_client
    if not settings.PAYPAL_CLIENT_ID or not settings.PAYPAL_CLIENT_SECRET:
        raise ConfigurationError("PayPal credentials are not configured")
    if _paypal_client is None:
        _paypal_client = PayPalClient(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET)
        logger.info(f"PayPal client ready: base_url={_paypal_client.base_url} mode={_paypal_client.mode}")
    return _paypal_client
