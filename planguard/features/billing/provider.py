"""
Payment gateway protocol.

Defines the interface the subscription lifecycle needs from a payment
gateway: start a transaction and verify it. Results are provider-agnostic
so gateways can be swapped without touching business logic.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class TransactionInitialization:
    """Result of starting a payment."""
    authorization_url: str
    reference: str
    access_code: Optional[str] = None


@dataclass
class TransactionVerification:
    """Gateway's view of a payment."""
    reference: str
    status: str  # success, failed, abandoned, ...
    amount_minor: int  # minor currency unit (kobo for NGN)
    currency: str
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    gateway_response: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations raise:
        PaymentGatewayError: the gateway answered and rejected the call
        GatewayUnavailableError: the gateway could not be reached
    """

    def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: str,
        channels: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransactionInitialization:
        ...

    def verify_transaction(self, reference: str) -> TransactionVerification:
        ...


class PaymentGatewayError(Exception):
    """Base exception for payment gateway errors."""
    pass


class GatewayUnavailableError(PaymentGatewayError):
    """Transport failure talking to the gateway (timeout, DNS, 5xx)."""
    pass
