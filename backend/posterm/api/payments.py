"""
GET  /api/payments
GET  /api/payments/stats
GET  /api/payments/{payment_id}
POST /api/payments/{payment_id}/process   mobile-driven tap / scan
POST /api/payments/{payment_id}/complete  external (wallet / QR) outcome
"""
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from posterm.api.deps import get_core, get_db, http_error
from posterm.api.schemas import CompletePaymentBody, ProcessPaymentBody
from posterm.core.errors import PosTermError
from posterm.db import repo
from posterm.services.core_state import TerminalCore

router = APIRouter(prefix="/api/payments")


@router.get("")
async def list_payments(
    terminal_id: Optional[str] = Query(None, alias="terminalId"),
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    payments = await repo.list_payment_sessions(db, terminal_id=terminal_id, status=status, limit=limit)
    return {"payments": [p.to_dict() for p in payments], "count": len(payments)}


@router.get("/stats")
async def payment_stats(
    terminal_id: Optional[str] = Query(None, alias="terminalId"),
    db: AsyncSession = Depends(get_db),
):
    return await repo.payment_stats(db, terminal_id=terminal_id)


@router.get("/{payment_id}")
async def get_payment(payment_id: str, core: TerminalCore = Depends(get_core)):
    try:
        payment = await core.orchestrator.get_session(payment_id)
    except PosTermError as exc:
        raise http_error(exc) from exc
    return payment.to_dict()


@router.post("/{payment_id}/process")
async def process_payment(payment_id: str, body: ProcessPaymentBody, core: TerminalCore = Depends(get_core)):
    try:
        payment = await core.orchestrator.handle_method_detected(
            body.terminal_id, payment_id, body.method, body.data,
        )
    except PosTermError as exc:
        raise http_error(exc) from exc
    return {"success": payment.status == "completed", "payment": payment.to_dict()}


@router.post("/{payment_id}/complete")
async def complete_payment(payment_id: str, body: CompletePaymentBody, core: TerminalCore = Depends(get_core)):
    try:
        payment = await core.orchestrator.handle_external_completion(body.terminal_id, payment_id, body.result)
    except PosTermError as exc:
        raise http_error(exc) from exc
    return {"success": True, "payment": payment.to_dict()}
