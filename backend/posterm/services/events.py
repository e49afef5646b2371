"""
Terminal channel events.

Each direction is a closed union discriminated on ``type``. Field names are
snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from posterm.core.errors import ErrorInfo, MethodFailure
from posterm.services.session_state import PaymentMethod


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Orchestrator → terminal ──────────────────────────────────────────


class TerminalConfig(_Event):
    name: str = ""
    operator: str = ""
    status: str = "active"
    location: str = ""


class TerminalConfigEvent(_Event):
    type: Literal["terminal_config"] = "terminal_config"
    terminal_id: str
    config: TerminalConfig
    status: str = "connected"
    timestamp: datetime = Field(default_factory=_now)


class PaymentRequestEvent(_Event):
    type: Literal["payment_request"] = "payment_request"
    payment_id: str
    amount: int
    currency: str
    method: Optional[PaymentMethod] = None
    qr_payload: Optional[dict] = None
    timestamp: datetime = Field(default_factory=_now)


class PaymentResultInfo(_Event):
    amount: int
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None


class PaymentStatusEvent(_Event):
    type: Literal["payment_status"] = "payment_status"
    payment_id: str
    status: str
    message: str
    result: Optional[PaymentResultInfo] = None
    error: Optional[ErrorInfo] = None
    timestamp: datetime = Field(default_factory=_now)


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str
    received_type: Optional[str] = None
    error: Optional[dict] = None
    timestamp: datetime = Field(default_factory=_now)


OutboundEvent = Annotated[
    Union[TerminalConfigEvent, PaymentRequestEvent, PaymentStatusEvent, ErrorEvent],
    Field(discriminator="type"),
]


# ── Terminal → orchestrator ──────────────────────────────────────────


class _TerminalEvent(_Event):
    terminal_id: str

    @field_validator("terminal_id")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Valid Terminal ID is required")
        return v


class TerminalReadyEvent(_TerminalEvent):
    type: Literal["terminal_ready"]


class MethodPayload(_Event):
    """Data captured by the terminal when a card is tapped or a QR is scanned."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    amount: Optional[int] = None
    currency: Optional[str] = None
    card_number: Optional[str] = None
    card_type: Optional[str] = None
    signature: Optional[str] = None


class NfcDetectedEvent(_TerminalEvent):
    type: Literal["nfc_detected"]
    payment_id: Optional[str] = None
    nfc_data: MethodPayload = Field(default_factory=MethodPayload)

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.NFC

    @property
    def payload(self) -> MethodPayload:
        return self.nfc_data


class QrScannedEvent(_TerminalEvent):
    type: Literal["qr_scanned"]
    payment_id: Optional[str] = None
    qr_data: MethodPayload = Field(default_factory=MethodPayload)

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.QR

    @property
    def payload(self) -> MethodPayload:
        return self.qr_data


class CompletionResult(_Event):
    status: Literal["completed", "failed"]
    bank_transaction_id: Optional[str] = None
    error_code: Optional[str] = None


class PaymentCompletedEvent(_TerminalEvent):
    type: Literal["payment_completed"]
    payment_id: str
    result: CompletionResult


class MethodFailedEvent(_TerminalEvent):
    type: Literal["method_failed"]
    payment_id: str
    method: PaymentMethod
    reason: MethodFailure


InboundEvent = Annotated[
    Union[TerminalReadyEvent, NfcDetectedEvent, QrScannedEvent, PaymentCompletedEvent, MethodFailedEvent],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset({"terminal_ready", "nfc_detected", "qr_scanned", "payment_completed", "method_failed"})

inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)
