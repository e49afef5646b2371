"""Acquiring bank simulator — always available, no external keys needed.

Every call sleeps for an injected delay and then draws its outcome
independently, so callers must tolerate both latency and random declines.
"""
from __future__ import annotations
import asyncio
import random
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from posterm.core.errors import CAPTURE_FAILED_CODE, ERROR_CATALOG, BANK_DECLINE_CODES
from posterm.core.logging import get_logger
from posterm.core.security import generate_auth_code, generate_transaction_id

logger = get_logger(__name__)

CAPTURE_SUCCESS_RATE = 0.99
STATUS_DELAY_MS = 100
MAX_TRACKED_TRANSACTIONS = 10_000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuthorizationRequest(BaseModel):
    amount: int
    currency: str
    terminal_id: str
    payment_id: str
    card_data: dict = {}


class AuthorizationResult(BaseModel):
    success: bool
    transaction_id: str
    status: str                          # authorized | declined
    timestamp: datetime
    auth_code: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class CaptureResult(BaseModel):
    success: bool
    transaction_id: str
    status: str                          # captured | capture_failed
    timestamp: datetime
    captured_amount: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class VoidResult(BaseModel):
    success: bool
    transaction_id: str
    status: str                          # voided
    timestamp: datetime


class TransactionStatus(BaseModel):
    transaction_id: str
    status: str                          # authorized | declined | captured | capture_failed | voided | not_found
    timestamp: datetime


class BankSimulator:
    """Simulated authorize / capture / void endpoints of an acquiring bank.

    ``success_rate`` and ``response_delay`` (milliseconds) can be retuned at
    runtime. ``rng`` is injectable so tests can make outcomes reproducible.
    Status lookups remember only the most recent ``max_transactions`` ids.
    """

    def __init__(
        self,
        success_rate: float = 0.9,
        response_delay: int = 500,
        capture_delay: int = 200,
        void_delay: int = 300,
        rng: random.Random | None = None,
        max_transactions: int = MAX_TRACKED_TRANSACTIONS,
    ) -> None:
        self.success_rate = 0.9
        self.response_delay = 500
        self.set_success_rate(success_rate)
        self.set_response_delay(response_delay)
        self.capture_delay = max(0, capture_delay)
        self.void_delay = max(0, void_delay)
        self.capture_success_rate = CAPTURE_SUCCESS_RATE
        self._rng = rng or random.Random()
        # transaction_id -> last status, oldest evicted first
        self._transactions: OrderedDict[str, str] = OrderedDict()
        self._max_transactions = max(1, max_transactions)

    # -- tuning -------------------------------------------------------------
    def set_success_rate(self, rate: float) -> None:
        self.success_rate = max(0.0, min(1.0, float(rate)))

    def set_response_delay(self, delay_ms: int) -> None:
        self.response_delay = max(0, int(delay_ms))

    def config(self) -> dict:
        return {"success_rate": self.success_rate, "response_delay": self.response_delay}

    # -- operations ---------------------------------------------------------
    async def _delay(self, ms: int) -> None:
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    def _record(self, transaction_id: str, status: str) -> None:
        self._transactions[transaction_id] = status
        self._transactions.move_to_end(transaction_id)
        while len(self._transactions) > self._max_transactions:
            self._transactions.popitem(last=False)

    def _random_decline(self) -> tuple[str, str]:
        code = self._rng.choice(BANK_DECLINE_CODES)
        return code, ERROR_CATALOG[code].message

    async def authorize(self, payment: AuthorizationRequest) -> AuthorizationResult:
        await self._delay(self.response_delay)

        transaction_id = generate_transaction_id()
        if self._rng.random() < self.success_rate:
            result = AuthorizationResult(
                success=True,
                transaction_id=transaction_id,
                status="authorized",
                timestamp=_now(),
                auth_code=generate_auth_code(self._rng),
                amount=payment.amount,
                currency=payment.currency,
            )
        else:
            code, message = self._random_decline()
            result = AuthorizationResult(
                success=False,
                transaction_id=transaction_id,
                status="declined",
                timestamp=_now(),
                error_code=code,
                error_message=message,
            )
        self._record(transaction_id, result.status)
        logger.info("[SIM] authorize payment=%s amount=%d -> %s %s",
                    payment.payment_id, payment.amount, result.status, result.error_code or "")
        return result

    async def capture(self, transaction_id: str, amount: int | None = None) -> CaptureResult:
        await self._delay(self.capture_delay)

        if self._rng.random() < self.capture_success_rate:
            result = CaptureResult(
                success=True,
                transaction_id=transaction_id,
                status="captured",
                timestamp=_now(),
                captured_amount=amount,
            )
        else:
            result = CaptureResult(
                success=False,
                transaction_id=transaction_id,
                status="capture_failed",
                timestamp=_now(),
                error_code=CAPTURE_FAILED_CODE,
                error_message=ERROR_CATALOG[CAPTURE_FAILED_CODE].message,
            )
        self._record(transaction_id, result.status)
        logger.info("[SIM] capture txn=%s -> %s", transaction_id, result.status)
        return result

    async def void(self, transaction_id: str) -> VoidResult:
        await self._delay(self.void_delay)
        self._record(transaction_id, "voided")
        logger.info("[SIM] void txn=%s", transaction_id)
        return VoidResult(success=True, transaction_id=transaction_id, status="voided", timestamp=_now())

    async def get_transaction_status(self, transaction_id: str) -> TransactionStatus:
        await self._delay(STATUS_DELAY_MS)
        return TransactionStatus(
            transaction_id=transaction_id,
            status=self._transactions.get(transaction_id, "not_found"),
            timestamp=_now(),
        )
