"""Request bodies for the HTTP routes (camelCase on the wire)."""
from __future__ import annotations
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from posterm.services.events import CompletionResult


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TerminalCreate(CamelModel):
    id: str = Field(..., min_length=1)
    name: str
    operator: str
    location: str = ""
    status: str = "active"


class PaymentRequestBody(CamelModel):
    amount: int
    currency: Optional[str] = None
    method: Optional[str] = None


class ProcessPaymentBody(CamelModel):
    terminal_id: str
    method: str
    data: dict = {}


class CompletePaymentBody(CamelModel):
    terminal_id: str
    result: CompletionResult


class BankAuthorizeBody(CamelModel):
    amount: int
    currency: str
    terminal_id: str
    payment_id: str
    card_data: dict = {}


class BankCaptureBody(CamelModel):
    transaction_id: str = Field(..., min_length=1)
    amount: Optional[int] = None


class BankVoidBody(CamelModel):
    transaction_id: str = Field(..., min_length=1)


class BankConfigBody(CamelModel):
    success_rate: Optional[float] = None
    response_delay: Optional[int] = None
