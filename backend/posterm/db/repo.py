"""Data access / repository layer (async SQLAlchemy)."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from posterm.core.logging import get_logger
from posterm.db.models import Base, PaymentSession, Terminal

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Engine / Session
# ---------------------------------------------------------------------------
def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB tables initialised")


# ---------------------------------------------------------------------------
# Terminal helpers
# ---------------------------------------------------------------------------
async def create_terminal(session: AsyncSession, **kwargs) -> Terminal:
    t = Terminal(**kwargs)
    session.add(t)
    await session.commit()
    await session.refresh(t)
    return t


async def get_terminal(session: AsyncSession, terminal_id: str) -> Optional[Terminal]:
    result = await session.execute(select(Terminal).where(Terminal.id == terminal_id))
    return result.scalar_one_or_none()


async def list_terminals(session: AsyncSession) -> list[Terminal]:
    result = await session.execute(select(Terminal).order_by(Terminal.created_at.desc()))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Payment session helpers
# ---------------------------------------------------------------------------
async def get_payment_session(session: AsyncSession, session_id: str) -> Optional[PaymentSession]:
    result = await session.execute(select(PaymentSession).where(PaymentSession.id == session_id))
    return result.scalar_one_or_none()


async def save_payment_session(session: AsyncSession, payment: PaymentSession) -> PaymentSession:
    merged = await session.merge(payment)
    await session.commit()
    return merged


async def update_payment_session_if(session: AsyncSession, payment: PaymentSession,
                                   expected_status: str) -> bool:
    """Write ``payment``'s mutable fields only if the stored row is still in ``expected_status``.

    Returns ``False`` when another writer moved the row first.
    """
    stmt = (
        update(PaymentSession)
        .where(PaymentSession.id == payment.id, PaymentSession.status == expected_status)
        .values(
            method=payment.method,
            status=payment.status,
            bank_transaction_id=payment.bank_transaction_id,
            error_code=payment.error_code,
            completed_at=payment.completed_at,
        )
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def list_payment_sessions(session: AsyncSession, terminal_id: str | None = None,
                                status: str | None = None, limit: int = 100) -> list[PaymentSession]:
    stmt = select(PaymentSession)
    if terminal_id:
        stmt = stmt.where(PaymentSession.terminal_id == terminal_id)
    if status:
        stmt = stmt.where(PaymentSession.status == status)
    stmt = stmt.order_by(PaymentSession.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def payment_stats(session: AsyncSession, terminal_id: str | None = None) -> dict:
    """Counts per status plus the completed turnover (kopecks)."""
    stmt = select(PaymentSession.status, func.count(), func.coalesce(func.sum(PaymentSession.amount), 0))
    if terminal_id:
        stmt = stmt.where(PaymentSession.terminal_id == terminal_id)
    result = await session.execute(stmt.group_by(PaymentSession.status))

    by_status: dict[str, int] = {}
    completed_amount = 0
    for status, count, total in result.all():
        by_status[status] = count
        if status == "completed":
            completed_amount = int(total)

    total_count = sum(by_status.values())
    return {
        "total": total_count,
        "by_status": by_status,
        "completed_amount": completed_amount,
        "success_rate": round(by_status.get("completed", 0) / total_count, 3) if total_count else 0.0,
    }
