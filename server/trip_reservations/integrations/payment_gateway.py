"""HTTP client for the external payment gateway (PayPal Orders v2 protocol)."""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, SecretStr

from ..core.clock import utcnow
from ..core.config import Settings
from ..core.exceptions import (
    GatewayAuthenticationError,
    GatewayCaptureFailedError,
    GatewayOrderCreationFailedError,
)
from ..core.observability import metrics_collector

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v1/oauth2/token"
ORDERS_PATH = "/v2/checkout/orders"

# Refresh tokens this long before the gateway says they expire
TOKEN_EXPIRY_SKEW_SECONDS = 60


class GatewayOrder(BaseModel):
    """Order created at the gateway, awaiting buyer approval."""

    order_id: str
    approve_url: str
    status: str = "CREATED"


class CaptureResult(BaseModel):
    """Outcome of capturing an approved order."""

    order_id: str
    status: str
    capture_id: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == "COMPLETED"


class PaymentGateway(Protocol):
    """Operations the checkout needs from a payment gateway."""

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        return_url: str,
        cancel_url: str,
        reference_id: Optional[str] = None,
    ) -> GatewayOrder: ...

    async def capture_order(self, order_id: str) -> CaptureResult: ...


class TokenCache:
    """Cache for client-credentials access tokens."""

    def __init__(self) -> None:
        self._token: str | None = None
        self._refresh_at: datetime | None = None

    def get(self) -> str | None:
        if self._token and self._refresh_at:
            if utcnow() < self._refresh_at:
                return self._token
        return None

    def set(self, token: str, expires_in: int) -> None:
        # Short-lived tokens keep at least half their lifetime
        skew = min(TOKEN_EXPIRY_SKEW_SECONDS, expires_in // 2)
        self._token = token
        self._refresh_at = utcnow() + timedelta(seconds=expires_in - skew)

    def clear(self) -> None:
        self._token = None
        self._refresh_at = None


def format_amount(amount_minor: int) -> str:
    """Render integer minor units as the gateway's two-decimal string."""
    if amount_minor < 0:
        raise ValueError("amount_minor must not be negative")
    return f"{amount_minor // 100}.{amount_minor % 100:02d}"


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error_description") or body.get("name") or body)
    return str(body)


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    """The response body as a JSON object, or None when it is anything else."""
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class PaymentGatewayClient:
    """
    Client for the gateway's OAuth and Orders APIs.

    Access tokens are fetched with client credentials and cached until shortly
    before they expire. A 401 on an API call drops the cached token and the
    call is retried once with a fresh one.
    """

    def __init__(
        self,
        *,
        base_url: str,
        client_id: str,
        client_secret: SecretStr | str,
        timeout: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = (
            client_secret.get_secret_value() if isinstance(client_secret, SecretStr) else client_secret
        )
        self._token_cache = TokenCache()
        self.http = http or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentGatewayClient":
        return cls(
            base_url=settings.resolved_gateway_base_url,
            client_id=settings.gateway_client_id,
            client_secret=settings.gateway_client_secret,
            timeout=settings.gateway_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def get_access_token(self) -> str:
        """Return a cached access token or obtain a new one."""
        cached = self._token_cache.get()
        if cached:
            return cached

        started = time.perf_counter()
        try:
            response = await self.http.post(
                TOKEN_PATH,
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            metrics_collector.observe_gateway_request("token", "error", time.perf_counter() - started)
            raise GatewayAuthenticationError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            metrics_collector.observe_gateway_request("token", "rejected", time.perf_counter() - started)
            logger.error(
                "Gateway rejected client credentials",
                extra={"status_code": response.status_code}
            )
            raise GatewayAuthenticationError(
                f"Token request rejected: {_error_detail(response)}",
                upstream_status=response.status_code,
            )

        payload = _json_object(response) or {}
        token = payload.get("access_token")
        if not token or not isinstance(token, str):
            raise GatewayAuthenticationError("Token response did not contain an access token")

        self._token_cache.set(token, int(payload.get("expires_in", 300)))
        metrics_collector.observe_gateway_request("token", "ok", time.perf_counter() - started)
        return token

    async def _authorized_post(
        self,
        operation: str,
        path: str,
        body: dict[str, Any],
        request_id: Optional[str] = None,
    ) -> httpx.Response:
        """POST with a bearer token, retrying once after a 401."""
        for attempt in (1, 2):
            token = await self.get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id

            started = time.perf_counter()
            response = await self.http.post(path, json=body, headers=headers)
            outcome = "ok" if response.is_success else str(response.status_code)
            metrics_collector.observe_gateway_request(operation, outcome, time.perf_counter() - started)

            if response.status_code == 401 and attempt == 1:
                logger.warning("Gateway token rejected, re-acquiring", extra={"operation": operation})
                self._token_cache.clear()
                continue
            return response
        return response

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        return_url: str,
        cancel_url: str,
        reference_id: Optional[str] = None,
    ) -> GatewayOrder:
        """
        Create a capture-intent order and return its approval link.

        Raises:
            GatewayOrderCreationFailedError: on transport errors, non-2xx answers,
                or a response without an ``approve`` link
            GatewayAuthenticationError: when no access token can be obtained
        """
        purchase_unit: dict[str, Any] = {
            "amount": {"currency_code": currency, "value": format_amount(amount_minor)},
        }
        if reference_id:
            purchase_unit["reference_id"] = reference_id
        body = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {"return_url": return_url, "cancel_url": cancel_url},
        }

        try:
            response = await self._authorized_post("create_order", ORDERS_PATH, body, request_id=reference_id)
        except httpx.HTTPError as exc:
            raise GatewayOrderCreationFailedError(f"Order request failed: {exc}") from exc

        if not response.is_success:
            raise GatewayOrderCreationFailedError(
                f"Order creation rejected: {_error_detail(response)}",
                upstream_status=response.status_code,
            )

        payload = _json_object(response)
        if payload is None:
            raise GatewayOrderCreationFailedError(
                f"Order response was not a JSON object: {response.text[:200]}",
                upstream_status=response.status_code,
            )
        approve_url = next(
            (link.get("href") for link in _dicts(payload.get("links")) if link.get("rel") == "approve"),
            None,
        )
        if not payload.get("id") or not approve_url:
            raise GatewayOrderCreationFailedError("Order response did not include an approval link")

        logger.info(
            "Gateway order created",
            extra={"gateway_order_id": payload["id"], "amount_minor": amount_minor, "currency": currency}
        )
        return GatewayOrder(order_id=payload["id"], approve_url=approve_url, status=payload.get("status", "CREATED"))

    async def capture_order(self, order_id: str) -> CaptureResult:
        """
        Capture an approved order.

        A 2xx response is returned as a ``CaptureResult`` whatever its status;
        callers decide what a non-COMPLETED status means.

        Raises:
            GatewayCaptureFailedError: on transport errors, non-2xx answers,
                or a body that is not a JSON object
        """
        try:
            response = await self._authorized_post(
                "capture_order",
                f"{ORDERS_PATH}/{order_id}/capture",
                {},
                request_id=f"capture-{order_id}",
            )
        except httpx.HTTPError as exc:
            raise GatewayCaptureFailedError(f"Capture request failed: {exc}") from exc

        if not response.is_success:
            raise GatewayCaptureFailedError(
                f"Capture rejected: {_error_detail(response)}",
                upstream_status=response.status_code,
            )

        payload = _json_object(response)
        if payload is None:
            raise GatewayCaptureFailedError(
                f"Capture response was not a JSON object: {response.text[:200]}",
                upstream_status=response.status_code,
            )
        capture_id = None
        for unit in _dicts(payload.get("purchase_units")):
            payments = unit.get("payments")
            captures = _dicts(payments.get("captures")) if isinstance(payments, dict) else []
            if captures:
                capture_id = captures[0].get("id")
                break

        result = CaptureResult(order_id=payload.get("id", order_id), status=payload.get("status", ""), capture_id=capture_id)
        logger.info(
            "Gateway capture answered",
            extra={"gateway_order_id": order_id, "status": result.status, "capture_id": capture_id}
        )
        return result
