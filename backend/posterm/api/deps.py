"""FastAPI dependencies and error translation shared by the routers."""
from __future__ import annotations
from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from posterm.core.errors import PosTermError
from posterm.services.core_state import TerminalCore


def get_core(request: Request) -> TerminalCore:
    return request.app.state.core


async def get_db(core: TerminalCore = Depends(get_core)) -> AsyncIterator[AsyncSession]:
    async with core.sessions() as session:
        yield session


def http_error(exc: PosTermError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
