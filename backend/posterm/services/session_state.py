"""
Payment session state machine.

    pending ──detected──▶ processing ──auth ok──▶ authorized ──capture ok──▶ completed
       │                      │                       │
       └──────────────────────┴───────────────────────┴──────▶ failed

``completed`` and ``failed`` are terminal. ``apply_transition`` is the only
place a session's status changes; it validates the pre-state before touching
any attribute, so a rejected event leaves the session exactly as it was.
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from posterm.core.errors import InvalidTransition, UNKNOWN_CODE
from posterm.db.models import PaymentSession


class SessionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    NFC = "nfc"
    QR = "qr"


class SessionEvent(str, Enum):
    METHOD_DETECTED = "method_detected"
    AUTHORIZED = "authorized"
    AUTHORIZATION_FAILED = "authorization_failed"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    TERMINAL_OFFLINE = "terminal_offline"
    METHOD_FAILED = "method_failed"
    EXTERNAL_COMPLETED = "external_completed"
    EXTERNAL_FAILED = "external_failed"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

_OPEN = frozenset({SessionStatus.PENDING, SessionStatus.PROCESSING, SessionStatus.AUTHORIZED})

# event -> (allowed pre-states, post-state)
TRANSITIONS: dict[SessionEvent, tuple[frozenset[SessionStatus], SessionStatus]] = {
    SessionEvent.METHOD_DETECTED: (frozenset({SessionStatus.PENDING}), SessionStatus.PROCESSING),
    SessionEvent.AUTHORIZED: (frozenset({SessionStatus.PROCESSING}), SessionStatus.AUTHORIZED),
    SessionEvent.AUTHORIZATION_FAILED: (frozenset({SessionStatus.PROCESSING}), SessionStatus.FAILED),
    SessionEvent.CAPTURED: (frozenset({SessionStatus.AUTHORIZED}), SessionStatus.COMPLETED),
    SessionEvent.CAPTURE_FAILED: (frozenset({SessionStatus.AUTHORIZED}), SessionStatus.FAILED),
    SessionEvent.TERMINAL_OFFLINE: (frozenset({SessionStatus.PENDING}), SessionStatus.FAILED),
    SessionEvent.METHOD_FAILED: (
        frozenset({SessionStatus.PENDING, SessionStatus.PROCESSING}), SessionStatus.FAILED,
    ),
    SessionEvent.EXTERNAL_COMPLETED: (_OPEN, SessionStatus.COMPLETED),
    SessionEvent.EXTERNAL_FAILED: (_OPEN, SessionStatus.FAILED),
}


def is_terminal(status: str) -> bool:
    return SessionStatus(status) in TERMINAL_STATUSES


def can_apply(session: PaymentSession, event: SessionEvent) -> bool:
    allowed, _ = TRANSITIONS[event]
    return SessionStatus(session.status) in allowed


def apply_transition(
    session: PaymentSession,
    event: SessionEvent,
    *,
    method: Optional[PaymentMethod] = None,
    bank_transaction_id: Optional[str] = None,
    error_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentSession:
    """Move ``session`` along ``event`` or raise ``InvalidTransition``."""
    allowed, target = TRANSITIONS[event]
    current = SessionStatus(session.status)
    if current not in allowed:
        raise InvalidTransition(
            f"Payment {session.id} is {current.value}; cannot apply {event.value}",
            paymentId=session.id,
            status=current.value,
        )

    if event is SessionEvent.METHOD_DETECTED and method is None:
        raise ValueError("method_detected requires a payment method")
    if event is SessionEvent.AUTHORIZED and not bank_transaction_id:
        raise ValueError("authorized requires a bank transaction id")

    if method is not None:
        session.method = method.value
    if bank_transaction_id and target in (SessionStatus.AUTHORIZED, SessionStatus.COMPLETED):
        session.bank_transaction_id = bank_transaction_id
    if target is SessionStatus.FAILED:
        session.error_code = error_code or UNKNOWN_CODE
    session.status = target.value
    if target in TERMINAL_STATUSES:
        session.completed_at = now or datetime.now(timezone.utc)
    return session
