"""
POST /api/terminals
GET  /api/terminals
GET  /api/terminals/connected
GET  /api/terminals/{terminal_id}/status
POST /api/terminals/{terminal_id}/payment-request
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from posterm.api.deps import get_core, get_db, http_error
from posterm.api.schemas import PaymentRequestBody, TerminalCreate
from posterm.core.errors import PosTermError, TerminalNotConnected
from posterm.core.logging import get_logger
from posterm.db import repo
from posterm.services.core_state import TerminalCore

router = APIRouter(prefix="/api/terminals")
logger = get_logger(__name__)


def _serialize_terminal(t, connected: bool) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "operator": t.operator,
        "status": t.status,
        "location": t.location,
        "connected": connected,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


@router.post("", status_code=201)
async def create_terminal(
    body: TerminalCreate,
    db: AsyncSession = Depends(get_db),
    core: TerminalCore = Depends(get_core),
):
    if not body.id.strip():
        raise HTTPException(status_code=400, detail="Terminal ID must be a non-empty string")
    if await repo.get_terminal(db, body.id):
        raise HTTPException(status_code=409, detail=f"Terminal with ID {body.id} already exists")
    t = await repo.create_terminal(
        db, id=body.id, name=body.name, operator=body.operator,
        location=body.location, status=body.status,
    )
    return _serialize_terminal(t, core.channel.is_connected(t.id))


@router.get("")
async def list_terminals(db: AsyncSession = Depends(get_db), core: TerminalCore = Depends(get_core)):
    terminals = await repo.list_terminals(db)
    return {"terminals": [_serialize_terminal(t, core.channel.is_connected(t.id)) for t in terminals]}


@router.get("/connected")
async def connected_terminals(core: TerminalCore = Depends(get_core)):
    connected = core.channel.get_connected_terminals()
    return {"terminals": connected, "count": len(connected)}


@router.get("/{terminal_id}/status")
async def terminal_status(terminal_id: str, core: TerminalCore = Depends(get_core)):
    return {"terminalId": terminal_id, "connected": core.channel.is_connected(terminal_id)}


@router.post("/{terminal_id}/payment-request", status_code=201)
async def payment_request(
    terminal_id: str,
    body: PaymentRequestBody,
    db: AsyncSession = Depends(get_db),
    core: TerminalCore = Depends(get_core),
):
    if await repo.get_terminal(db, terminal_id) is None:
        raise HTTPException(status_code=404, detail="Terminal not found")
    try:
        payment = await core.orchestrator.request_payment(
            terminal_id, body.amount, currency=body.currency, method=body.method,
        )
    except TerminalNotConnected as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "payment": exc.session.to_dict() if exc.session else None},
        )
    except PosTermError as exc:
        raise http_error(exc) from exc
    return {"success": True, "payment": payment.to_dict()}
