"""
Closed error taxonomy and the domain exceptions raised by the core.

Every failure a terminal can see resolves to one catalog entry and is rendered
as the same ``ErrorInfo`` shape, so the display layer never needs to know
where an error came from.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from posterm.core.config import get_settings


class ErrorType(str, Enum):
    NFC = "nfc"
    QR = "qr"
    BANK = "bank"
    NETWORK = "network"
    SYSTEM = "system"
    VALIDATION = "validation"
    TIMEOUT = "timeout"


# Types for which the terminal offers no retry button.
NON_RETRYABLE_TYPES = frozenset({ErrorType.SYSTEM})


@dataclass(frozen=True)
class CatalogEntry:
    code: str
    message: str
    type: ErrorType


_ENTRIES = [
    # Bank
    CatalogEntry("E001", "Insufficient funds", ErrorType.BANK),
    CatalogEntry("E002", "Card is blocked", ErrorType.BANK),
    CatalogEntry("E003", "Network connection error", ErrorType.NETWORK),
    CatalogEntry("E004", "Invalid card data", ErrorType.BANK),
    CatalogEntry("E005", "Card has expired", ErrorType.BANK),
    CatalogEntry("E006", "Transaction declined by issuer", ErrorType.BANK),
    CatalogEntry("E007", "Capture failed - authorization expired", ErrorType.BANK),
    # NFC
    CatalogEntry("NFC001", "NFC is not supported", ErrorType.NFC),
    CatalogEntry("NFC002", "NFC read error", ErrorType.NFC),
    CatalogEntry("NFC003", "NFC operation timed out", ErrorType.NFC),
    # QR
    CatalogEntry("QR001", "QR code generation failed", ErrorType.QR),
    CatalogEntry("QR002", "Network error while generating QR code", ErrorType.QR),
    CatalogEntry("QR003", "QR payment failed", ErrorType.QR),
    CatalogEntry("QR004", "QR payment expired", ErrorType.QR),
    # System
    CatalogEntry("SYS001", "Connection to server lost", ErrorType.SYSTEM),
    CatalogEntry("SYS002", "Storage error", ErrorType.SYSTEM),
    CatalogEntry("SYS003", "Internal server error", ErrorType.SYSTEM),
    CatalogEntry("TERMINAL_OFFLINE", "Terminal is not connected", ErrorType.SYSTEM),
    # Timeout
    CatalogEntry("TIMEOUT001", "Operation timed out", ErrorType.TIMEOUT),
    # Fallback
    CatalogEntry("E000", "Unknown error", ErrorType.SYSTEM),
]

ERROR_CATALOG: dict[str, CatalogEntry] = {e.code: e for e in _ENTRIES}

BANK_DECLINE_CODES = ("E001", "E002", "E003", "E004", "E005", "E006")
CAPTURE_FAILED_CODE = "E007"
NETWORK_ERROR_CODE = "E003"
TERMINAL_OFFLINE_CODE = "TERMINAL_OFFLINE"
UNKNOWN_CODE = "E000"


class MethodFailure(str, Enum):
    """Typed failure reasons a terminal reports for a payment method."""

    UNSUPPORTED = "unsupported"
    READ_FAILED = "read_failed"
    TIMEOUT = "timeout"
    GENERATION_FAILED = "generation_failed"
    NETWORK = "network"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"


_METHOD_FAILURE_CODES: dict[tuple[str, MethodFailure], str] = {
    ("nfc", MethodFailure.UNSUPPORTED): "NFC001",
    ("nfc", MethodFailure.READ_FAILED): "NFC002",
    ("nfc", MethodFailure.TIMEOUT): "NFC003",
    ("qr", MethodFailure.GENERATION_FAILED): "QR001",
    ("qr", MethodFailure.NETWORK): "QR002",
    ("qr", MethodFailure.PAYMENT_FAILED): "QR003",
    ("qr", MethodFailure.EXPIRED): "QR004",
    ("qr", MethodFailure.TIMEOUT): "QR004",
}


def method_failure_code(method: str, reason: MethodFailure) -> str:
    """Map a (method, reason) pair to its catalog code.

    Pairs with no dedicated code fall back to the method's generic entry
    (NFC002 / QR003).
    """
    code = _METHOD_FAILURE_CODES.get((method, reason))
    if code:
        return code
    return "NFC002" if method == "nfc" else "QR003"


class ErrorInfo(BaseModel):
    """Uniform, display-ready error shape."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: str
    message: str
    type: ErrorType
    show_retry: bool
    timeout: int
    timestamp: datetime


def is_retryable(code: str) -> bool:
    entry = ERROR_CATALOG.get(code, ERROR_CATALOG[UNKNOWN_CODE])
    return entry.type not in NON_RETRYABLE_TYPES


def describe_error(code: str | None, message: str | None = None) -> ErrorInfo:
    """Build the display shape for a code.

    Codes outside the catalog keep their verbatim value but are classified
    like E000. ``message`` overrides the canned text only for such codes.
    """
    code = code or UNKNOWN_CODE
    entry = ERROR_CATALOG.get(code)
    if entry is None:
        fallback = ERROR_CATALOG[UNKNOWN_CODE]
        text, err_type = message or fallback.message, fallback.type
    else:
        text, err_type = entry.message, entry.type
    return ErrorInfo(
        code=code,
        message=text,
        type=err_type,
        show_retry=err_type not in NON_RETRYABLE_TYPES,
        timeout=get_settings().ERROR_DISPLAY_TIMEOUT_MS,
        timestamp=datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------
class PosTermError(Exception):
    """Base class for client-visible core errors."""

    status_code: int = 400
    code: str = "SYS003"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, **self.context}


class InvalidRequest(PosTermError):
    status_code = 400
    code = "VALIDATION"


class UnknownTerminal(PosTermError):
    status_code = 404
    code = "TERMINAL_NOT_FOUND"


class SessionNotFound(PosTermError):
    status_code = 404
    code = "PAYMENT_NOT_FOUND"


class InvalidTransition(PosTermError):
    status_code = 409
    code = "INVALID_STATE"


class TerminalNotConnected(PosTermError):
    status_code = 503
    code = TERMINAL_OFFLINE_CODE

    def __init__(self, message: str, session=None, **context: Any) -> None:
        super().__init__(message, **context)
        self.session = session


class BankUnavailable(PosTermError):
    """Transport-level bank failure (raised, timed out or refused)."""

    status_code = 502
    code = NETWORK_ERROR_CODE
