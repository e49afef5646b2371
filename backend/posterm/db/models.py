"""SQLAlchemy async models for the terminal database."""
from __future__ import annotations
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, CheckConstraint
from sqlalchemy.orm import DeclarativeBase


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Terminal(Base):
    __tablename__ = "terminals"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    operator = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")   # active | inactive
    location = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    def config(self) -> dict:
        return {
            "name": self.name,
            "operator": self.operator,
            "status": self.status,
            "location": self.location or "",
        }


class PaymentSession(Base):
    __tablename__ = "payment_sessions"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_payment_sessions_amount_positive"),)

    id = Column(String, primary_key=True)
    terminal_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)                  # kopecks
    currency = Column(String(3), nullable=False, default="RUB")
    method = Column(String, nullable=True)                    # None | nfc | qr
    status = Column(String, nullable=False, default="pending", index=True)
    bank_transaction_id = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "terminalId": self.terminal_id,
            "amount": self.amount,
            "currency": self.currency,
            "method": self.method,
            "status": self.status,
            "bankTransactionId": self.bank_transaction_id,
            "errorCode": self.error_code,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
