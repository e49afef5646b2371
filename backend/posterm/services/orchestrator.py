"""
Session orchestrator — drives payment sessions through the bank cycle.

The only component that mutates payment sessions. Each public operation
validates its input before anything is written, awaits every bank step
before issuing the next one, and ends every failure path in a ``failed``
session plus exactly one status push to the terminal.

Status writes are compare-and-set on the stored status, so two callers racing
on the same session cannot both move it: the loser gets ``InvalidTransition``
before it reaches the bank or the terminal.
"""
from __future__ import annotations
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posterm.core.config import Settings, get_settings
from posterm.core.errors import (
    BankUnavailable, InvalidRequest, InvalidTransition, MethodFailure, NETWORK_ERROR_CODE,
    SessionNotFound, TERMINAL_OFFLINE_CODE, TerminalNotConnected, describe_error, method_failure_code,
)
from posterm.core.logging import get_logger
from posterm.core.security import constant_time_compare, generate_id, sign_payload
from posterm.db import repo
from posterm.db.models import PaymentSession
from posterm.services.bank_simulator import AuthorizationRequest, BankSimulator
from posterm.services.events import (
    CompletionResult, MethodPayload, PaymentRequestEvent, PaymentResultInfo, PaymentStatusEvent,
)
from posterm.services.session_state import (
    PaymentMethod, SessionEvent, SessionStatus, apply_transition,
)
from posterm.services.terminal_channel import TerminalChannel, channel_key

logger = get_logger(__name__)

T = TypeVar("T")


class SessionOrchestrator:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        bank: BankSimulator,
        channel: TerminalChannel,
        settings: Settings | None = None,
    ) -> None:
        self._sessions = sessions
        self.bank = bank
        self.channel = channel
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    async def request_payment(
        self,
        terminal_id: str,
        amount: int,
        currency: str | None = None,
        method: str | PaymentMethod | None = None,
    ) -> PaymentSession:
        """Create a pending session and push it to the terminal.

        The session is persisted before delivery is attempted, so an offline
        terminal still leaves a ``failed`` record behind.
        """
        self._require_terminal_id(terminal_id)
        self._require_amount(amount)
        currency = self._require_currency(currency)
        payment_method = self._parse_method(method) if method is not None else None

        session = await self._save(PaymentSession(
            id=generate_id("pay_"),
            terminal_id=terminal_id,
            amount=amount,
            currency=currency,
            method=payment_method.value if payment_method else None,
            status=SessionStatus.PENDING.value,
        ))
        self._audit(session, "payment_request")

        event = PaymentRequestEvent(
            payment_id=session.id,
            amount=session.amount,
            currency=session.currency,
            method=payment_method,
            qr_payload=self.qr_payload(session) if payment_method is PaymentMethod.QR else None,
        )
        if not await self.channel.send(channel_key(terminal_id), event):
            session = await self._advance(
                session, SessionEvent.TERMINAL_OFFLINE, error_code=TERMINAL_OFFLINE_CODE,
            )
            self._audit(session, "terminal_offline")
            raise TerminalNotConnected(
                f"Terminal {terminal_id} is not connected", session=session, paymentId=session.id,
            )
        return session

    async def handle_method_detected(
        self,
        terminal_id: str,
        session_id: Optional[str],
        method: str | PaymentMethod,
        payload: MethodPayload | dict | None = None,
    ) -> PaymentSession:
        """Run a detected tap/scan through authorize and capture.

        Without ``session_id`` a session is opened ad hoc from the payload.
        Bank failures never escape: they finish the session as ``failed``.
        """
        self._require_terminal_id(terminal_id)
        payment_method = self._parse_method(method)
        if payload is None:
            payload = MethodPayload()
        elif isinstance(payload, dict):
            payload = MethodPayload.model_validate(payload)

        if session_id:
            session = await self._load(terminal_id, session_id)
            if payment_method is PaymentMethod.QR:
                if payload.signature:
                    self._verify_qr_signature(session, payload.signature)
                if session.status == SessionStatus.PENDING.value and self.qr_expired(session):
                    code = method_failure_code(payment_method.value, MethodFailure.EXPIRED)
                    return await self._fail(session, SessionEvent.METHOD_FAILED, code,
                                            "QR payment expired", action="qr_expired", method=payment_method)
            session = await self._advance(session, SessionEvent.METHOD_DETECTED, method=payment_method)
        else:
            amount = payload.amount if payload.amount is not None else self.settings.DEFAULT_DETECTED_AMOUNT
            self._require_amount(amount)
            session = PaymentSession(
                id=generate_id("pay_"),
                terminal_id=terminal_id,
                amount=amount,
                currency=self._require_currency(payload.currency),
                status=SessionStatus.PENDING.value,
            )
            apply_transition(session, SessionEvent.METHOD_DETECTED, method=payment_method)
            session = await self._save(session)

        self._audit(session, f"{payment_method.value}_detected")
        await self._push_status(session, f"Processing {payment_method.value.upper()} payment")

        return await self._settle_with_bank(session, payload)

    async def handle_external_completion(
        self,
        terminal_id: str,
        session_id: str,
        result: CompletionResult | dict,
    ) -> PaymentSession:
        """Apply an outcome decided outside the simulator (wallet / QR webhook)."""
        self._require_terminal_id(terminal_id)
        if isinstance(result, dict):
            result = CompletionResult.model_validate(result)
        session = await self._load(terminal_id, session_id)

        if result.status == SessionStatus.COMPLETED.value:
            session = await self._advance(
                session, SessionEvent.EXTERNAL_COMPLETED, bank_transaction_id=result.bank_transaction_id,
            )
            self._audit(session, "payment_completed")
            await self._push_status(
                session, "Payment confirmed",
                result=PaymentResultInfo(amount=session.amount, transaction_id=session.bank_transaction_id),
            )
        else:
            session = await self._advance(session, SessionEvent.EXTERNAL_FAILED, error_code=result.error_code)
            self._audit(session, "payment_failed")
            await self._push_status(session, "Payment failed", error_code=session.error_code)
        return session

    async def handle_method_failure(
        self,
        terminal_id: str,
        session_id: str,
        method: str | PaymentMethod,
        reason: MethodFailure | str,
    ) -> PaymentSession:
        """Fail a session because the terminal could not use the payment method."""
        self._require_terminal_id(terminal_id)
        payment_method = self._parse_method(method)
        try:
            reason = MethodFailure(reason)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown failure reason: {reason}") from exc

        session = await self._load(terminal_id, session_id)
        code = method_failure_code(payment_method.value, reason)
        session = await self._advance(
            session, SessionEvent.METHOD_FAILED, method=payment_method, error_code=code,
        )
        self._audit(session, f"{payment_method.value}_failed")
        await self._push_status(session, f"{payment_method.value.upper()} payment failed", error_code=code)
        return session

    async def get_session(self, session_id: str) -> PaymentSession:
        async with self._sessions() as db:
            session = await repo.get_payment_session(db, session_id)
        if session is None:
            raise SessionNotFound("Payment not found", paymentId=session_id)
        return session

    def qr_payload(self, session: PaymentSession) -> dict:
        """Data the terminal renders as a QR image (image encoding is done client-side)."""
        body = {
            "paymentId": session.id,
            "terminalId": session.terminal_id,
            "amount": session.amount,
            "currency": session.currency,
            "expiresAt": self.qr_expires_at(session).isoformat(),
        }
        return {**body, "signature": sign_payload(body, self.settings.QR_SIGNING_SECRET)}

    def qr_expires_at(self, session: PaymentSession) -> datetime:
        # Derived from created_at so the signed payload can be rebuilt on scan.
        created = session.created_at or datetime.now(timezone.utc)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created + timedelta(seconds=self.settings.QR_TTL_SECONDS)

    def qr_expired(self, session: PaymentSession, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.qr_expires_at(session)

    # ------------------------------------------------------------------
    # Bank cycle
    # ------------------------------------------------------------------
    async def _settle_with_bank(self, session: PaymentSession, payload: MethodPayload) -> PaymentSession:
        card_data = payload.model_dump(by_alias=True, exclude_none=True, exclude={"amount", "currency"})
        try:
            auth = await self._bank_call(self.bank.authorize(AuthorizationRequest(
                amount=session.amount,
                currency=session.currency,
                terminal_id=session.terminal_id,
                payment_id=session.id,
                card_data=card_data,
            )))
        except BankUnavailable as exc:
            logger.warning("authorize failed for payment %s: %s", session.id, exc)
            return await self._fail(session, SessionEvent.AUTHORIZATION_FAILED, NETWORK_ERROR_CODE,
                                    "Bank communication error", action="bank_error")

        if not auth.success:
            return await self._fail(session, SessionEvent.AUTHORIZATION_FAILED, auth.error_code,
                                    "Payment authorization failed", action="auth_failed")

        try:
            session = await self._advance(
                session, SessionEvent.AUTHORIZED, bank_transaction_id=auth.transaction_id,
            )
        except InvalidTransition:
            # Settled elsewhere while the bank was answering; release the hold.
            await self._release(auth.transaction_id)
            raise
        self._audit(session, "bank_authorized")

        try:
            capture = await self._bank_call(self.bank.capture(auth.transaction_id, session.amount))
        except BankUnavailable as exc:
            logger.warning("capture failed for payment %s: %s", session.id, exc)
            return await self._fail(session, SessionEvent.CAPTURE_FAILED, NETWORK_ERROR_CODE,
                                    "Bank communication error", action="bank_error")

        if not capture.success:
            return await self._fail(session, SessionEvent.CAPTURE_FAILED, capture.error_code,
                                    "Payment capture failed", action="capture_failed")

        session = await self._advance(session, SessionEvent.CAPTURED)
        self._audit(session, "completed")
        await self._push_status(
            session, "Payment successful",
            result=PaymentResultInfo(
                amount=session.amount, transaction_id=auth.transaction_id, auth_code=auth.auth_code,
            ),
        )
        return session

    async def _bank_call(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.settings.BANK_CALL_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            raise BankUnavailable("Bank call timed out") from exc
        except Exception as exc:
            raise BankUnavailable(str(exc) or exc.__class__.__name__) from exc

    async def _release(self, transaction_id: str) -> None:
        try:
            await self._bank_call(self.bank.void(transaction_id))
        except BankUnavailable as exc:
            logger.warning("void of %s failed: %s", transaction_id, exc)

    async def _fail(self, session: PaymentSession, event: SessionEvent, code: Optional[str],
                    message: str, action: str, method: PaymentMethod | None = None) -> PaymentSession:
        session = await self._advance(session, event, method=method, error_code=code)
        self._audit(session, action)
        await self._push_status(session, message, error_code=session.error_code)
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _push_status(self, session: PaymentSession, message: str,
                           result: PaymentResultInfo | None = None,
                           error_code: str | None = None) -> bool:
        event = PaymentStatusEvent(
            payment_id=session.id,
            status=session.status,
            message=message,
            result=result,
            error=describe_error(error_code) if error_code else None,
        )
        delivered = await self.channel.send(channel_key(session.terminal_id), event)
        if not delivered:
            logger.warning("status %s for payment %s not delivered to terminal %s",
                           session.status, session.id, session.terminal_id)
        return delivered

    async def _load(self, terminal_id: str, session_id: str) -> PaymentSession:
        session = await self.get_session(session_id)
        if session.terminal_id != terminal_id:
            raise InvalidRequest(
                f"Payment {session_id} does not belong to terminal {terminal_id}", paymentId=session_id,
            )
        return session

    async def _save(self, session: PaymentSession) -> PaymentSession:
        async with self._sessions() as db:
            return await repo.save_payment_session(db, session)

    async def _advance(self, session: PaymentSession, event: SessionEvent, **changes) -> PaymentSession:
        """Apply ``event`` and persist it only if nobody moved the row since it was read."""
        previous = session.status
        apply_transition(session, event, **changes)
        async with self._sessions() as db:
            written = await repo.update_payment_session_if(db, session, previous)
        if not written:
            raise InvalidTransition(
                f"Payment {session.id} changed concurrently; cannot apply {event.value}",
                paymentId=session.id,
            )
        return session

    def _verify_qr_signature(self, session: PaymentSession, signature: str) -> None:
        expected = self.qr_payload(session)["signature"]
        if not constant_time_compare(expected, signature):
            raise InvalidRequest("QR signature does not match payment", paymentId=session.id)

    @staticmethod
    def _audit(session: PaymentSession, action: str) -> None:
        logger.info(
            "transaction %s payment=%s terminal=%s amount=%d method=%s status=%s error=%s",
            action, session.id, session.terminal_id, session.amount,
            session.method, session.status, session.error_code,
        )

    @staticmethod
    def _require_terminal_id(terminal_id: object) -> None:
        if channel_key(terminal_id) is None:
            raise InvalidRequest("Valid Terminal ID is required")

    def _require_amount(self, amount: object) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidRequest("Amount must be an integer number of kopecks")
        if amount <= 0 or amount > self.settings.MAX_AMOUNT:
            raise InvalidRequest(f"Amount must be between 1 and {self.settings.MAX_AMOUNT} kopecks")

    def _require_currency(self, currency: str | None) -> str:
        currency = currency or self.settings.DEFAULT_CURRENCY
        if currency not in self.settings.SUPPORTED_CURRENCIES:
            raise InvalidRequest(f"Unsupported currency: {currency}")
        return currency

    @staticmethod
    def _parse_method(method: str | PaymentMethod) -> PaymentMethod:
        try:
            return PaymentMethod(method)
        except ValueError as exc:
            raise InvalidRequest(f"Unsupported payment method: {method}") from exc
