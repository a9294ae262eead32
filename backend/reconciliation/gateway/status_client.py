"""
Payment Gateway Status Client

Single status-query call against the payment gateway (Pesapal API 3.0
style), used to refresh pending payments before payables are reconciled and
to pull gateway-side transaction records.

Features:
- Bearer token obtained from /Auth/RequestToken and reused until rejected
- Explicit per-request timeout
- Retry with exponential backoff for timeouts, connection errors and 5xx
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from reconciliation.errors import GatewayError
from reconciliation.records import TransactionRecord, normalize_identifier, parse_date
from reconciliation.strategy_registry import TransactionSource
from sentry_integration import add_gateway_breadcrumb

logger = logging.getLogger(__name__)

TOKEN_PATH = "/Auth/RequestToken"
STATUS_PATH = "/Transactions/GetTransactionStatus"


@dataclass
class GatewayTransactionStatus:
    """Status of one gateway order as reported by the gateway."""
    tracking_id: str
    status: str
    amount: Decimal
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    merchant_reference: Optional[str] = None
    confirmation_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, tracking_id: str, data: Dict[str, Any]) -> "GatewayTransactionStatus":
        status = data.get("payment_status_description") or data.get("status") or "UNKNOWN"
        try:
            amount = Decimal(str(data.get("amount") or 0))
        except (InvalidOperation, ValueError):
            amount = Decimal("0")
        try:
            paid_at = parse_date(data.get("created_date"))
        except (ValueError, OverflowError):
            paid_at = None

        return cls(
            tracking_id=data.get("order_tracking_id") or tracking_id,
            status=str(status).strip().lower(),
            amount=abs(amount),
            currency=data.get("currency"),
            paid_at=paid_at,
            payment_method=data.get("payment_method"),
            merchant_reference=normalize_identifier(data.get("merchant_reference")),
            confirmation_code=normalize_identifier(data.get("confirmation_code")),
            raw=data,
        )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_failed(self) -> bool:
        return self.status in ("failed", "invalid")

    @property
    def is_reversed(self) -> bool:
        return self.status == "reversed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "amount": str(self.amount),
            "currency": self.currency,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_method": self.payment_method,
        }

    def to_transaction_record(self) -> TransactionRecord:
        """Gateway-side record for the reconciliation engine."""
        return TransactionRecord(
            transaction_id=self.tracking_id,
            reference=self.merchant_reference,
            amount=self.amount,
            date=self.paid_at,
            source=TransactionSource.GATEWAY,
            metadata={
                "status": self.status,
                "currency": self.currency,
                "payment_method": self.payment_method,
                "confirmation_code": self.confirmation_code,
            },
        )


class GatewayStatusClient:
    """
    Client for the gateway's transaction status endpoint.

    All failures surface as GatewayError once retries are exhausted.
    """

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = 15.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.transport = transport
        self._token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GatewayStatusClient":
        return cls(
            base_url=settings.GATEWAY_BASE_URL,
            consumer_key=settings.GATEWAY_CONSUMER_KEY,
            consumer_secret=settings.GATEWAY_CONSUMER_SECRET,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_retries=settings.GATEWAY_MAX_RETRIES,
            backoff_seconds=settings.GATEWAY_BACKOFF_SECONDS,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def get_transaction_status(self, tracking_id: str) -> GatewayTransactionStatus:
        """
        Query the status of a gateway order.

        Raises:
            GatewayError: authentication failed, request rejected or retries exhausted
        """
        if not tracking_id:
            raise GatewayError("Order tracking id is required")

        data = await self._request_with_retry(
            "GET", STATUS_PATH, params={"orderTrackingId": tracking_id}
        )
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GatewayError(f"Gateway rejected status query: {message}")

        return GatewayTransactionStatus.from_response(tracking_id, data)

    async def _request_with_retry(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        last_error = None
        for attempt in range(self.max_retries):
            try:
                return await self._authorized_request(method, path, attempt + 1, **kwargs)
            except httpx.TimeoutException:
                last_error = "Connection to payment gateway timed out"
            except httpx.TransportError as e:
                last_error = f"Cannot connect to payment gateway: {str(e)[:100]}"
            except GatewayError as e:
                if e.status_code is None or e.status_code < 500:
                    raise
                last_error = e.message

            logger.warning(f"Gateway {method} {path} attempt {attempt + 1} failed: {last_error}")
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise GatewayError(f"Payment gateway unavailable after {self.max_retries} attempts: {last_error}")

    async def _authorized_request(self, method: str, path: str, attempt: int = 1, **kwargs) -> Dict[str, Any]:
        token = await self._get_token()
        async with self._client() as client:
            response = await client.request(
                method, path,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                **kwargs
            )
        add_gateway_breadcrumb(method, path, response.status_code, attempt)

        if response.status_code == 401:
            # Token expired; fetch a new one on the next attempt
            self._token = None
            raise GatewayError("Gateway token rejected", status_code=503)
        if response.status_code >= 400:
            raise GatewayError(
                f"HTTP {response.status_code}: {response.text[:100]}",
                status_code=response.status_code
            )
        try:
            data = response.json()
        except ValueError:
            raise GatewayError(f"Gateway returned invalid JSON for {path}")
        if not isinstance(data, dict):
            raise GatewayError(f"Gateway returned unexpected payload for {path}")
        return data

    async def _get_token(self) -> str:
        if self._token:
            return self._token

        async with self._client() as client:
            response = await client.post(
                TOKEN_PATH,
                json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
                headers={"Accept": "application/json"}
            )

        if response.status_code >= 500:
            raise GatewayError(f"Token request failed: HTTP {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            raise GatewayError("Gateway authentication failed", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Gateway returned invalid token response")
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise GatewayError("Gateway returned no token")
        self._token = token
        return token
