# backend/app/services/payment_gateway.py
"""
Payment gateway adapter.

Wraps the wallet provider's initiate and verify calls behind a small
interface. The adapter knows about money only: it never touches slots or
sessions, and ``verify`` has no local side effects so it can be polled.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
import logging
from typing import Any, Dict, Mapping, Optional

from ..core.constants import MAX_PURCHASE_ORDER_NAME_LENGTH, PAISA_PER_RUPEE
from ..core.exceptions import GatewayException, ValidationException
from ..core.timezone_utils import ensure_utc
from ..integrations.khalti_client import (
    KHALTI_COMPLETED,
    KHALTI_EXPIRED,
    KHALTI_INITIATED,
    KHALTI_PARTIALLY_REFUNDED,
    KHALTI_PENDING,
    KHALTI_REFUNDED,
    KHALTI_USER_CANCELED,
    FakeKhaltiClient,
    KhaltiClient,
    KhaltiError,
)
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class InitiatedPayment:
    transaction_ref: str
    redirect_url: str
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationOutcome:
    status: VerificationStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    provider_status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == VerificationStatus.COMPLETED


def build_order_ref(therapist_id: str, client_id: str, slot_start: datetime) -> str:
    """
    Deterministic merchant reference for one logical booking.

    Retried initiations for the same (therapist, client, slot) share it, so
    every provider-side payment can be traced back to the booking.
    """
    stamp = ensure_utc(slot_start).strftime("%Y%m%d-%H%M")
    return f"SESSION-{therapist_id}-{client_id}-{stamp}"


def to_minor_units(amount: Decimal) -> int:
    return int((amount * PAISA_PER_RUPEE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Stable interface over an external wallet provider."""

    @abstractmethod
    def initiate(
        self,
        amount: Decimal,
        currency: str,
        order_ref: str,
        customer_info: Optional[Mapping[str, Any]] = None,
    ) -> InitiatedPayment:
        """Start a payment. Every call yields a fresh transaction reference."""

    @abstractmethod
    def verify(self, transaction_ref: str) -> VerificationOutcome:
        """Ask the provider where a payment stands."""


_FAILED_STATUSES = frozenset(
    {KHALTI_EXPIRED, KHALTI_USER_CANCELED, KHALTI_REFUNDED, KHALTI_PARTIALLY_REFUNDED}
)
_PENDING_STATUSES = frozenset({KHALTI_PENDING, KHALTI_INITIATED})


class KhaltiPaymentGateway(PaymentGateway):
    """Khalti ePayment implementation. Khalti settles in NPR only."""

    SUPPORTED_CURRENCY = "NPR"

    def __init__(
        self,
        client: KhaltiClient | FakeKhaltiClient,
        *,
        return_url: str,
        website_url: str,
    ) -> None:
        self._client = client
        self._return_url = return_url
        self._website_url = website_url

    def initiate(
        self,
        amount: Decimal,
        currency: str,
        order_ref: str,
        customer_info: Optional[Mapping[str, Any]] = None,
    ) -> InitiatedPayment:
        if currency.upper() != self.SUPPORTED_CURRENCY:
            raise ValidationException(
                f"Khalti only accepts {self.SUPPORTED_CURRENCY}",
                code="UNSUPPORTED_CURRENCY",
                details={"currency": currency},
            )
        amount_paisa = to_minor_units(amount)
        if amount_paisa <= 0:
            raise ValidationException("Amount must be positive", details={"amount": str(amount)})

        try:
            payload = self._client.initiate_payment(
                amount_paisa=amount_paisa,
                purchase_order_id=order_ref,
                purchase_order_name=f"Therapy session {order_ref}"[:MAX_PURCHASE_ORDER_NAME_LENGTH],
                return_url=self._return_url,
                website_url=self._website_url,
                customer_info=dict(customer_info) if customer_info else None,
            )
        except KhaltiError as exc:
            prometheus_metrics.record_gateway_call("initiate", "error")
            raise GatewayException(
                "Payment provider rejected the payment request",
                operation="initiate",
                provider_status=exc.status_code,
                details={"order_ref": order_ref},
            ) from exc

        pidx = payload.get("pidx")
        payment_url = payload.get("payment_url")
        if not pidx or not payment_url:
            prometheus_metrics.record_gateway_call("initiate", "malformed")
            logger.error(
                "Khalti initiate response missing pidx/payment_url",
                extra={"order_ref": order_ref, "keys": sorted(payload)},
            )
            raise GatewayException(
                "Payment provider returned an incomplete response", operation="initiate"
            )

        prometheus_metrics.record_gateway_call("initiate", "ok")
        logger.info(
            "Khalti payment initiated",
            extra={"order_ref": order_ref, "transaction_ref": pidx, "amount_paisa": amount_paisa},
        )
        return InitiatedPayment(
            transaction_ref=str(pidx),
            redirect_url=str(payment_url),
            expires_at=_parse_expiry(payload.get("expires_at")),
            raw=payload,
        )

    def verify(self, transaction_ref: str) -> VerificationOutcome:
        try:
            payload = self._client.lookup_payment(transaction_ref)
        except KhaltiError as exc:
            if exc.status_code == 404:
                prometheus_metrics.record_gateway_call("verify", "not_found")
                return VerificationOutcome(
                    status=VerificationStatus.NOT_FOUND,
                    raw={"error": exc.error_body} if exc.error_body else {},
                )
            prometheus_metrics.record_gateway_call("verify", "error")
            raise GatewayException(
                "Could not verify payment with the provider",
                operation="verify",
                provider_status=exc.status_code,
                details={"transaction_ref": transaction_ref},
            ) from exc

        provider_status = payload.get("status")
        prometheus_metrics.record_gateway_call("verify", "ok")

        if provider_status == KHALTI_COMPLETED:
            total = payload.get("total_amount")
            if total is None:
                raise GatewayException(
                    "Completed payment without an amount",
                    operation="verify",
                    details={"transaction_ref": transaction_ref},
                )
            return VerificationOutcome(
                status=VerificationStatus.COMPLETED,
                amount=(Decimal(int(total)) / PAISA_PER_RUPEE).quantize(Decimal("0.01")),
                currency=self.SUPPORTED_CURRENCY,
                provider_status=provider_status,
                raw=payload,
            )
        if provider_status in _PENDING_STATUSES:
            return VerificationOutcome(
                status=VerificationStatus.PENDING, provider_status=provider_status, raw=payload
            )
        if provider_status in _FAILED_STATUSES:
            return VerificationOutcome(
                status=VerificationStatus.FAILED, provider_status=provider_status, raw=payload
            )

        logger.error(
            "Unrecognized Khalti status",
            extra={"transaction_ref": transaction_ref, "provider_status": provider_status},
        )
        raise GatewayException(
            f"Unrecognized payment status {provider_status!r}",
            operation="verify",
            details={"transaction_ref": transaction_ref},
        )


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None
