# backend/app/services/payment_poller.py
"""
Bounded payment polling.

The poller asks "is my booking paid yet?" on an interval until the booking
resolves, the attempt budget runs out, or the caller cancels. It does not
care how the question is asked: ``poll_fn`` may call the orchestrator
in-process or the HTTP API through ``http_poll_fn``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import httpx

from ..core.exceptions import GatewayException
from .booking_orchestrator import BookingOutcome, BookingOutcomeStatus

if TYPE_CHECKING:
    from .booking_orchestrator import BookingOrchestrator

logger = logging.getLogger(__name__)

PollFn = Callable[[str], Awaitable[BookingOutcome]]
CancelFn = Callable[[str], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollPolicy:
    """
    How often and how long to poll.

    Attributes:
        interval_seconds: delay before the second poll
        max_attempts: total polls before giving up
        backoff_multiplier: growth factor applied to the delay after each poll
        max_interval_seconds: ceiling for the delay
        max_gateway_errors: consecutive gateway failures tolerated before
            the error is surfaced to the caller
    """

    interval_seconds: float = 5.0
    max_attempts: int = 60
    backoff_multiplier: float = 1.0
    max_interval_seconds: float = 30.0
    max_gateway_errors: int = 3

    def __post_init__(self) -> None:
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.max_gateway_errors < 0:
            raise ValueError("max_gateway_errors must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt``-th poll."""
        delay = self.interval_seconds * (self.backoff_multiplier**attempt)
        return min(delay, self.max_interval_seconds)


class PollResultStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PollResult:
    status: PollResultStatus
    transaction_ref: str
    attempts: int
    session_id: Optional[str] = None
    reason: Optional[str] = None


class PaymentPoller:
    def __init__(
        self,
        poll_fn: PollFn,
        policy: Optional[PollPolicy] = None,
        *,
        cancel_fn: Optional[CancelFn] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._poll_fn = poll_fn
        self._policy = policy or PollPolicy()
        self._cancel_fn = cancel_fn
        self._sleep = sleep

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    async def run(
        self, transaction_ref: str, cancel_event: Optional[asyncio.Event] = None
    ) -> PollResult:
        """
        Poll until the booking resolves.

        Raises:
            GatewayException: more than ``max_gateway_errors`` consecutive
                gateway failures
        """
        policy = self._policy
        gateway_errors = 0
        attempts = 0

        for attempt in range(policy.max_attempts):
            if cancel_event is not None and cancel_event.is_set():
                return await self._cancel(transaction_ref, attempts)

            attempts += 1
            try:
                outcome = await self._poll_fn(transaction_ref)
            except GatewayException as exc:
                gateway_errors += 1
                if gateway_errors > policy.max_gateway_errors:
                    logger.error(
                        "Giving up on payment polling after gateway errors",
                        extra={"transaction_ref": transaction_ref, "gateway_errors": gateway_errors},
                    )
                    raise
                logger.warning(
                    "Gateway error while polling; retrying",
                    extra={
                        "transaction_ref": transaction_ref,
                        "gateway_errors": gateway_errors,
                        "error": exc.message,
                    },
                )
            else:
                gateway_errors = 0
                if outcome.status == BookingOutcomeStatus.CONFIRMED:
                    return PollResult(
                        PollResultStatus.CONFIRMED,
                        transaction_ref,
                        attempts,
                        session_id=outcome.session_id,
                    )
                if outcome.status == BookingOutcomeStatus.FAILED:
                    return PollResult(
                        PollResultStatus.FAILED, transaction_ref, attempts, reason=outcome.reason
                    )

            if attempt + 1 < policy.max_attempts:
                if await self._wait(policy.delay_for(attempt), cancel_event):
                    return await self._cancel(transaction_ref, attempts)

        logger.info(
            "Payment polling exhausted", extra={"transaction_ref": transaction_ref, "attempts": attempts}
        )
        return PollResult(PollResultStatus.TIMED_OUT, transaction_ref, attempts)

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay``; True if cancelled meanwhile."""
        if cancel_event is None:
            await self._sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _cancel(self, transaction_ref: str, attempts: int) -> PollResult:
        if self._cancel_fn is not None:
            await self._cancel_fn(transaction_ref)
        logger.info("Payment polling cancelled", extra={"transaction_ref": transaction_ref})
        return PollResult(PollResultStatus.CANCELLED, transaction_ref, attempts)


def in_process_poll_fn(orchestrator: "BookingOrchestrator", client_id: Optional[str] = None) -> PollFn:
    """Poll the orchestrator directly, off the event loop."""

    async def _poll(transaction_ref: str) -> BookingOutcome:
        return await asyncio.to_thread(orchestrator.poll_payment, transaction_ref, client_id)

    return _poll


def http_poll_fn(client: httpx.AsyncClient, verify_path: str = "/api/v1/booking/verify") -> PollFn:
    """
    Poll the booking API.

    ``client`` carries the base URL and the caller's bearer token. A 502
    maps back to ``GatewayException`` so the poller's retry budget applies;
    any other error status is raised as ``httpx.HTTPStatusError``.
    """

    async def _poll(transaction_ref: str) -> BookingOutcome:
        response = await client.post(verify_path, json={"transaction_ref": transaction_ref})
        if response.status_code == 502:
            raise GatewayException(
                "Payment provider unavailable",
                operation="verify",
                provider_status=response.status_code,
            )
        response.raise_for_status()
        body = response.json()
        return BookingOutcome(
            status=BookingOutcomeStatus(body["outcome"]),
            transaction_ref=body.get("transaction_ref", transaction_ref),
            session_id=body.get("session_id"),
            reason=body.get("reason"),
        )

    return _poll
