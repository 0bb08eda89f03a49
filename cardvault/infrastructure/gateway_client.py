"""Payment gateway HTTP client.

Talks to an EasyPay compatible credit gateway:

- builds the signed form the buyer's browser posts to start a payment
- queries and refunds trades through the gateway API endpoint
- implements the MD5 parameter signature shared by both directions
"""

import asyncio
import hashlib
import hmac
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from cardvault.domain.exceptions import (
    GatewayConfigurationError,
    GatewayRejectedError,
    GatewayUnavailableError,
)
from cardvault.domain.value_objects import format_amount
from cardvault.infrastructure.config import settings
from cardvault.infrastructure.models import OrderModel

logger = structlog.get_logger()

SIGN_EXCLUDED_KEYS = frozenset({"sign", "sign_type"})
SUCCESS_CODE = 1
PRODUCT_NAME_MAX_LENGTH = 64

# Statuses worth retrying; anything else non-2xx fails immediately.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Failures raised before the request reached the gateway
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


# ============================================================================
# Signature
# ============================================================================


def build_sign_string(params: Mapping[str, Any]) -> str:
    """Build the canonical ``k1=v1&k2=v2`` string a signature covers.

    Drops ``sign``, ``sign_type`` and empty values, then sorts keys in
    ascending byte order. Values are not URL-encoded.

    Args:
        params: Parameters to sign.

    Returns:
        Canonical string without the secret.
    """
    pairs = sorted(
        (key, str(value))
        for key, value in params.items()
        if key not in SIGN_EXCLUDED_KEYS and value is not None and str(value) != ""
    )
    return "&".join(f"{key}={value}" for key, value in pairs)


def generate_sign(params: Mapping[str, Any], secret: str) -> str:
    """Compute the gateway signature.

    Args:
        params: Parameters to sign; ``sign``/``sign_type`` are ignored.
        secret: Merchant shared secret, appended without separator.

    Returns:
        Lowercase hex MD5 digest.
    """
    payload = build_sign_string(params) + secret
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify_sign(params: Mapping[str, Any], secret: str) -> bool:
    """Verify the ``sign`` carried in a parameter set.

    Args:
        params: Received parameters including ``sign``.
        secret: Merchant shared secret.

    Returns:
        True if the signature matches.
    """
    received = str(params.get("sign") or "")
    if not received:
        return False
    expected = generate_sign(params, secret)
    return hmac.compare_digest(expected, received)


# ============================================================================
# Gateway Configuration
# ============================================================================


def normalize_gateway_url(url: str) -> str:
    """Strip trailing slashes and make sure the base ends in ``/epay``."""
    url = url.rstrip("/")
    if "/epay" not in url:
        url = f"{url}/epay"
    return url


@dataclass
class GatewayConfig:
    """Merchant credentials and endpoints for the gateway."""

    pid: str
    secret: str
    base_url: str
    site_url: str
    channel_type: str = "epay"
    timeout: float = 10.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5

    @classmethod
    def from_settings(cls) -> "GatewayConfig":
        """Build configuration from application settings."""
        return cls(
            pid=settings.ldc_pid,
            secret=settings.ldc_secret,
            base_url=normalize_gateway_url(settings.ldc_gateway_url),
            site_url=settings.site_url.rstrip("/"),
            channel_type=settings.ldc_channel_type,
            timeout=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_max_attempts,
            backoff_seconds=settings.gateway_backoff_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.pid and self.secret)

    @property
    def submit_url(self) -> str:
        return f"{self.base_url}/pay/submit.php"

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api.php"

    @property
    def notify_url(self) -> str:
        return f"{self.site_url}/api/payment/notify"

    def return_url(self, order_no: str) -> str:
        return f"{self.site_url}/order/result?orderNo={order_no}"


# ============================================================================
# Results
# ============================================================================


@dataclass
class PaymentForm:
    """Form the buyer's browser submits to the gateway."""

    action_url: str
    fields: dict[str, str]


@dataclass
class TradeQueryResult:
    """Trade as reported by the gateway query endpoint."""

    trade_no: str
    out_trade_no: str
    money: str
    status: int
    type: str | None = None
    name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status == 1

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "TradeQueryResult":
        """Create from gateway API response data."""
        return cls(
            trade_no=str(data.get("trade_no", "")),
            out_trade_no=str(data.get("out_trade_no", "")),
            money=str(data.get("money", "")),
            status=int(data.get("status") or 0),
            type=data.get("type"),
            name=data.get("name"),
            raw=data,
        )


@dataclass
class RefundResult:
    """Successful refund reply."""

    code: int
    message: str


@dataclass
class RefundHandoff:
    """Parameters an operator's browser posts to the gateway itself."""

    api_url: str
    fields: dict[str, str]


# ============================================================================
# Payment Gateway Client
# ============================================================================


class PaymentGatewayClient:
    """HTTP client for the payment gateway.

    Outbound API calls carry a bounded timeout and are retried with
    exponential backoff on transient failures; refunds are only retried
    when the request never reached the gateway. Persistent failure,
    non-2xx answers and non-JSON bodies (e.g. bot-challenge pages) are
    reported as ``GatewayUnavailableError``; a JSON body whose ``code``
    is not 1 is reported as ``GatewayRejectedError``.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize gateway client.

        Args:
            config: Gateway configuration; defaults to application settings.
            transport: Optional httpx transport (used by tests).
            sleep: Coroutine used to wait between retries.
        """
        self.config = config or GatewayConfig.from_settings()
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_credentials(self) -> None:
        if not self.config.is_configured:
            raise GatewayConfigurationError(
                "Payment gateway credentials are not configured"
            )

    # ------------------------------------------------------------------
    # Payment creation
    # ------------------------------------------------------------------

    def build_payment_request(self, order: OrderModel) -> PaymentForm:
        """Build the signed payment form for an order.

        Args:
            order: Pending order to pay.

        Returns:
            Form with action URL and fields, including ``sign``.

        Raises:
            GatewayConfigurationError: If credentials are missing.
        """
        self._require_credentials()

        params = {
            "pid": self.config.pid,
            "type": self.config.channel_type,
            "out_trade_no": order.order_no,
            "name": (order.product_name or "")[:PRODUCT_NAME_MAX_LENGTH],
            "money": format_amount(order.total_amount),
            "notify_url": self.config.notify_url,
            "return_url": self.config.return_url(order.order_no),
        }
        fields = {
            **params,
            "sign": generate_sign(params, self.config.secret),
            "sign_type": "MD5",
        }

        logger.info(
            "Built payment form",
            order_no=order.order_no,
            money=params["money"],
            action_url=self.config.submit_url,
        )
        return PaymentForm(action_url=self.config.submit_url, fields=fields)

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    async def query_order(self, trade_no: str) -> TradeQueryResult:
        """Query a trade by gateway trade number.

        Args:
            trade_no: Gateway trade number.

        Returns:
            The trade as reported by the gateway.

        Raises:
            GatewayConfigurationError: If credentials are missing.
            GatewayUnavailableError: On transport failure or unusable reply.
            GatewayRejectedError: If the gateway returns an error code.
        """
        self._require_credentials()
        data = await self._call(
            "GET",
            operation="query",
            params={
                "act": "order",
                "pid": self.config.pid,
                "key": self.config.secret,
                "trade_no": trade_no,
            },
        )
        return TradeQueryResult.from_api_response(data)

    async def refund(self, trade_no: str, money: Any) -> RefundResult:
        """Refund a trade.

        Args:
            trade_no: Gateway trade number.
            money: Amount to refund in major units.

        Returns:
            The gateway's success reply.

        Raises:
            GatewayConfigurationError: If credentials are missing.
            GatewayUnavailableError: On transport failure or unusable reply.
            GatewayRejectedError: If the gateway returns an error code.
        """
        self._require_credentials()
        data = await self._call(
            "POST",
            operation="refund",
            idempotent=False,
            json={
                "pid": self.config.pid,
                "key": self.config.secret,
                "trade_no": trade_no,
                "money": format_amount(money),
            },
        )
        return RefundResult(code=SUCCESS_CODE, message=str(data.get("msg") or ""))

    def refund_handoff_parameters(self, trade_no: str, money: Any) -> RefundHandoff:
        """Parameters for a refund the operator's browser submits directly.

        The merchant secret is part of the parameter set; the gateway
        authenticates API calls with it.

        Args:
            trade_no: Gateway trade number.
            money: Amount to refund in major units.

        Returns:
            API URL and form fields.
        """
        self._require_credentials()
        return RefundHandoff(
            api_url=self.config.api_url,
            fields={
                "pid": self.config.pid,
                "key": self.config.secret,
                "trade_no": trade_no,
                "money": format_amount(money),
            },
        )

    async def _call(
        self,
        method: str,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        idempotent: bool = True,
    ) -> dict[str, Any]:
        """Send an API request with retries and classify the reply.

        A non-idempotent request is only re-sent when it never left this
        process (connection refused, connect or pool timeout) or the
        gateway throttled it. A read timeout, a dropped connection or a
        5xx answer may mean the gateway already acted on it, so the call
        fails at once with ``outcome_unknown`` set.

        Args:
            method: HTTP method.
            operation: Operation name for logging.
            params: Query parameters.
            json: JSON body.
            idempotent: Whether repeating the request is harmless.

        Returns:
            Decoded JSON body of a successful reply.
        """
        client = await self._get_client()
        attempts = max(1, self.config.max_attempts)
        last_error = "no attempt made"

        for attempt in range(1, attempts + 1):
            try:
                response = await client.request(
                    method, self.config.api_url, params=params, json=json
                )
            except _NOT_SENT_ERRORS as e:
                last_error = f"connection failed: {e}"
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                if not idempotent:
                    self._raise_outcome_unknown(operation, last_error)
            except httpx.RequestError as e:
                last_error = f"request failed: {e}"
                if not idempotent:
                    self._raise_outcome_unknown(operation, last_error)
            else:
                if response.status_code == 429:
                    last_error = "HTTP 429"
                elif response.status_code in _RETRYABLE_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                    if not idempotent:
                        self._raise_outcome_unknown(
                            operation, last_error, status_code=response.status_code
                        )
                elif not response.is_success:
                    logger.error(
                        "Gateway returned non-success status",
                        operation=operation,
                        status_code=response.status_code,
                    )
                    raise GatewayUnavailableError(
                        f"Gateway returned HTTP {response.status_code}",
                        details={"status_code": response.status_code},
                    )
                else:
                    return self._decode(response, operation)

            if attempt < attempts:
                delay = self.config.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Gateway call failed, retrying",
                    operation=operation,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=last_error,
                )
                await self._sleep(delay)

        logger.error(
            "Gateway call failed after retries",
            operation=operation,
            attempts=attempts,
            error=last_error,
        )
        raise GatewayUnavailableError(
            f"Gateway unavailable: {last_error}",
            details={"attempts": attempts},
        )

    @staticmethod
    def _raise_outcome_unknown(operation: str, error: str, **details: Any) -> None:
        logger.error(
            "Gateway call outcome unknown, not retrying",
            operation=operation,
            error=error,
            **details,
        )
        raise GatewayUnavailableError(
            f"Gateway outcome unknown: {error}",
            details=details,
            outcome_unknown=True,
        )

    @staticmethod
    def _decode(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            logger.error(
                "Gateway returned a non-JSON body",
                operation=operation,
                content_type=response.headers.get("content-type"),
            )
            raise GatewayUnavailableError(
                "Gateway returned a non-JSON response"
            ) from e

        if not isinstance(data, dict):
            raise GatewayUnavailableError("Gateway returned an unexpected JSON body")

        code = data.get("code")
        try:
            succeeded = int(code) == SUCCESS_CODE
        except (TypeError, ValueError):
            succeeded = False
        if not succeeded:
            message = str(data.get("msg") or f"{operation} failed")
            logger.warning(
                "Gateway rejected request",
                operation=operation,
                code=code,
                message=message,
            )
            raise GatewayRejectedError(message, code=code)
        return data


# Global client instance
_gateway_client: PaymentGatewayClient | None = None


def get_gateway_client() -> PaymentGatewayClient:
    """Get the gateway client singleton.

    Returns:
        PaymentGatewayClient instance.
    """
    global _gateway_client
    if _gateway_client is None:
        _gateway_client = PaymentGatewayClient()
    return _gateway_client
