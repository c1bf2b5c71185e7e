"""Khalti ePayment (KPG-2) API client."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, cast
import uuid

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)

# Lookup statuses returned by Khalti
KHALTI_COMPLETED = "Completed"
KHALTI_PENDING = "Pending"
KHALTI_INITIATED = "Initiated"
KHALTI_EXPIRED = "Expired"
KHALTI_USER_CANCELED = "User canceled"
KHALTI_REFUNDED = "Refunded"
KHALTI_PARTIALLY_REFUNDED = "Partially Refunded"


class KhaltiError(RuntimeError):
    """Raised when Khalti responds with an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_body = error_body


class KhaltiClient:
    """Thin client for the Khalti ePayment REST API."""

    def __init__(
        self,
        *,
        secret_key: str | SecretStr,
        base_url: str = "https://a.khalti.com/api/v2",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        secret_value = (
            secret_key.get_secret_value() if isinstance(secret_key, SecretStr) else secret_key
        )
        if not secret_value:
            raise ValueError("Khalti secret key must be provided")

        self._secret_key = secret_value
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def initiate_payment(
        self,
        *,
        amount_paisa: int,
        purchase_order_id: str,
        purchase_order_name: str,
        return_url: str,
        website_url: str,
        customer_info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Start a hosted payment.

        Returns:
            Khalti payload with ``pidx``, ``payment_url`` and ``expires_at``
        """
        if amount_paisa <= 0:
            raise ValueError("amount_paisa must be positive")
        body: Dict[str, Any] = {
            "return_url": return_url,
            "website_url": website_url,
            "amount": amount_paisa,
            "purchase_order_id": purchase_order_id,
            "purchase_order_name": purchase_order_name,
        }
        if customer_info:
            body["customer_info"] = {k: v for k, v in customer_info.items() if v}
        return self.request("POST", "/epayment/initiate/", json_body=body)

    def lookup_payment(self, pidx: str) -> Dict[str, Any]:
        """Fetch the current status of a payment by ``pidx``."""
        if not pidx:
            raise ValueError("pidx must be provided")
        return self.request("POST", "/epayment/lookup/", json_body={"pidx": pidx})

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Perform a raw Khalti request and return the parsed JSON payload."""

        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Key {self._secret_key}",
            "Accept": "application/json",
        }
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = client.request(method, url, json=json_body, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                error_payload: Any | None
                try:
                    error_payload = exc.response.json()
                except json.JSONDecodeError:
                    error_payload = exc.response.text[:500]
                logger.error(
                    "Khalti API error %s for %s %s: %s",
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                raise KhaltiError(
                    f"Khalti responded with status {status}",
                    status_code=status,
                    error_body=error_payload,
                ) from exc
            except httpx.RequestError as exc:
                logger.error("Khalti request failure for %s %s: %s", method, path, str(exc))
                raise KhaltiError("Failed to reach Khalti") from exc

        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from Khalti for %s %s: %s", method, path, response.text)
            raise KhaltiError("Received malformed JSON from Khalti") from exc


class FakeKhaltiClient:
    """
    In-memory stand-in for Khalti used in local runs and tests.

    Payments start as ``Initiated``; tests move them along with
    ``set_status``.
    """

    def __init__(self) -> None:
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.calls: list[Dict[str, Any]] = []
        self._errors: Dict[str, KhaltiError] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def set_error(self, method: str, error: KhaltiError) -> None:
        """Inject a method-specific error for deterministic failure testing."""
        self._errors[method] = error

    def clear_errors(self) -> None:
        self._errors.clear()

    def _raise_if_injected(self, method: str) -> None:
        error = self._errors.get(method)
        if error is not None:
            raise error

    def set_status(self, pidx: str, status: str, *, total_amount: Optional[int] = None) -> None:
        payment = self.payments[pidx]
        payment["status"] = status
        if total_amount is not None:
            payment["total_amount"] = total_amount

    def initiate_payment(self, *, amount_paisa: int, purchase_order_id: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(
            {"method": "initiate_payment", "amount_paisa": amount_paisa, "purchase_order_id": purchase_order_id, **kwargs}
        )
        self._raise_if_injected("initiate_payment")
        pidx = uuid.uuid4().hex[:22]
        self.payments[pidx] = {
            "pidx": pidx,
            "status": KHALTI_INITIATED,
            "total_amount": amount_paisa,
            "purchase_order_id": purchase_order_id,
            "transaction_id": None,
        }
        self._logger.debug("Fake Khalti payment initiated", extra={"pidx": pidx})
        return {
            "pidx": pidx,
            "payment_url": f"https://test-pay.khalti.com/?pidx={pidx}",
            "expires_at": None,
            "expires_in": 1800,
        }

    def lookup_payment(self, pidx: str) -> Dict[str, Any]:
        self.calls.append({"method": "lookup_payment", "pidx": pidx})
        self._raise_if_injected("lookup_payment")
        payment = self.payments.get(pidx)
        if payment is None:
            raise KhaltiError(
                "Khalti responded with status 404",
                status_code=404,
                error_body={"detail": "Not found.", "error_key": "validation_error"},
            )
        return dict(payment)
