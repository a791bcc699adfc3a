"""
Paystack payment gateway implementation.

Implements PaymentGateway over Paystack's REST API with httpx.
Transport failures become GatewayUnavailableError; API-level rejections
(status false, 4xx) become PaymentGatewayError.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from planguard.core.config import settings
from planguard.features.billing.provider import (
    GatewayUnavailableError,
    PaymentGatewayError,
    TransactionInitialization,
    TransactionVerification,
)

logger = logging.getLogger(__name__)


def _parse_paid_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PaystackProvider:
    """Paystack implementation of PaymentGateway protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Paystack provider.

        Args:
            secret_key: Paystack secret key (defaults to PAYSTACK_SECRET_KEY)
            base_url: API root (defaults to PAYSTACK_BASE_URL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not self.secret_key:
            raise PaymentGatewayError("PAYSTACK_SECRET_KEY not configured")

        self._client = httpx.Client(
            base_url=base_url or settings.PAYSTACK_BASE_URL,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout or settings.PAYSTACK_TIMEOUT_SECONDS,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error("paystack.unreachable", extra={"path": path, "error": str(e)})
            raise GatewayUnavailableError(f"Paystack request failed: {e}") from e

        if response.status_code >= 500:
            logger.error("paystack.server_error", extra={"path": path, "status": response.status_code})
            raise GatewayUnavailableError(f"Paystack returned {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            raise PaymentGatewayError(f"Paystack returned a non-JSON response ({response.status_code})")

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Paystack returned {response.status_code}"
            logger.warning("paystack.rejected", extra={"path": path, "status": response.status_code, "error": message})
            raise PaymentGatewayError(message)

        return body.get("data") or {}

    def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: str,
        channels: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransactionInitialization:
        """Start a Paystack transaction; amount is in kobo."""
        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "callback_url": callback_url,
        }
        if channels:
            payload["channels"] = channels
        if metadata:
            payload["metadata"] = metadata

        data = self._request("POST", "/transaction/initialize", json=payload)
        if not data.get("authorization_url"):
            raise PaymentGatewayError("Paystack did not return an authorization URL")
        return TransactionInitialization(
            authorization_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            access_code=data.get("access_code"),
        )

    def verify_transaction(self, reference: str) -> TransactionVerification:
        data = self._request("GET", f"/transaction/verify/{reference}")
        return TransactionVerification(
            reference=data.get("reference") or reference,
            status=data.get("status") or "unknown",
            amount_minor=int(data.get("amount") or 0),
            currency=data.get("currency") or "",
            paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
            channel=data.get("channel"),
            gateway_response=data.get("gateway_response"),
            metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
        )
