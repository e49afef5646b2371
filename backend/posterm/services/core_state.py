"""
Process-wide core state.

``TerminalCore`` owns everything that lives for the duration of the process:
the database engine, the bank simulator, the terminal channel registry and
the orchestrator wired to them. The app creates one in its lifespan
(``init`` on startup, ``close`` on shutdown); tests create their own.
"""
from __future__ import annotations

from posterm.core.config import Settings, get_settings
from posterm.core.logging import get_logger
from posterm.db import repo
from posterm.services.bank_simulator import BankSimulator
from posterm.services.orchestrator import SessionOrchestrator
from posterm.services.terminal_channel import TerminalChannel

logger = get_logger(__name__)


class TerminalCore:
    def __init__(self, settings: Settings | None = None, bank: BankSimulator | None = None) -> None:
        self.settings = settings or get_settings()
        self.engine = repo.build_engine(self.settings.DATABASE_URL, echo=False)
        self.sessions = repo.build_sessionmaker(self.engine)
        self.bank = bank or BankSimulator(
            success_rate=self.settings.BANK_SUCCESS_RATE,
            response_delay=self.settings.BANK_RESPONSE_DELAY_MS,
            capture_delay=self.settings.BANK_CAPTURE_DELAY_MS,
            void_delay=self.settings.BANK_VOID_DELAY_MS,
        )
        self.channel = TerminalChannel()
        self.orchestrator = SessionOrchestrator(self.sessions, self.bank, self.channel, self.settings)

    async def init(self) -> None:
        await repo.init_db(self.engine)
        logger.info("Core ready (bank success_rate=%.2f delay=%dms)",
                    self.bank.success_rate, self.bank.response_delay)

    async def close(self) -> None:
        await self.channel.close_all()
        await self.engine.dispose()
        logger.info("Core shut down")
