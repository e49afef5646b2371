"""
Direct access to the bank simulator (testing and admin tooling).

POST /api/bank/authorize
POST /api/bank/capture
POST /api/bank/void
GET  /api/bank/transaction/{transaction_id}
GET  /api/bank/config
POST /api/bank/config
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from posterm.api.deps import get_core
from posterm.api.schemas import BankAuthorizeBody, BankCaptureBody, BankConfigBody, BankVoidBody
from posterm.core.logging import get_logger
from posterm.services.bank_simulator import AuthorizationRequest
from posterm.services.core_state import TerminalCore

router = APIRouter(prefix="/api/bank")
logger = get_logger(__name__)


@router.post("/authorize")
async def authorize(body: BankAuthorizeBody, core: TerminalCore = Depends(get_core)):
    if body.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be positive")
    if body.currency not in core.settings.SUPPORTED_CURRENCIES:
        raise HTTPException(status_code=400, detail="Only RUB currency is supported")

    result = await core.bank.authorize(AuthorizationRequest(
        amount=body.amount,
        currency=body.currency,
        terminal_id=body.terminal_id,
        payment_id=body.payment_id,
        card_data=body.card_data,
    ))
    # 402 Payment Required for declines
    return JSONResponse(status_code=200 if result.success else 402, content=result.model_dump(mode="json"))


@router.post("/capture")
async def capture(body: BankCaptureBody, core: TerminalCore = Depends(get_core)):
    if body.amount is not None and body.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be positive if specified")
    result = await core.bank.capture(body.transaction_id, body.amount)
    return JSONResponse(status_code=200 if result.success else 400, content=result.model_dump(mode="json"))


@router.post("/void")
async def void(body: BankVoidBody, core: TerminalCore = Depends(get_core)):
    result = await core.bank.void(body.transaction_id)
    return result.model_dump(mode="json")


@router.get("/transaction/{transaction_id}")
async def transaction_status(transaction_id: str, core: TerminalCore = Depends(get_core)):
    result = await core.bank.get_transaction_status(transaction_id)
    return result.model_dump(mode="json")


@router.get("/config")
async def get_config(core: TerminalCore = Depends(get_core)):
    return core.bank.config()


@router.post("/config")
async def update_config(body: BankConfigBody, core: TerminalCore = Depends(get_core)):
    if body.success_rate is not None:
        if not 0 <= body.success_rate <= 1:
            raise HTTPException(status_code=400, detail="Success rate must be between 0 and 1")
        core.bank.set_success_rate(body.success_rate)
    if body.response_delay is not None:
        if body.response_delay < 0:
            raise HTTPException(status_code=400, detail="Response delay must be non-negative")
        core.bank.set_response_delay(body.response_delay)

    logger.info("Bank simulator reconfigured: %s", core.bank.config())
    return {"message": "Bank simulator configuration updated", **core.bank.config()}
