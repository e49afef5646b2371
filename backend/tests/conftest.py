"""Shared fixtures: isolated core per test, instant bank, recording connections."""

import random

import pytest

from posterm.core.config import Settings
from posterm.services.bank_simulator import BankSimulator
from posterm.services.core_state import TerminalCore


class FakeConnection:
    """In-memory stand-in for a terminal WebSocket."""

    def __init__(self):
        self.sent: list[dict] = []
        self.is_open = True
        self.fail_sends = False

    async def send_json(self, data: dict) -> None:
        if self.fail_sends:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self) -> None:
        self.is_open = False

    def of_type(self, event_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == event_type]

    def statuses(self) -> list[str]:
        return [m["status"] for m in self.of_type("payment_status")]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'posterm-test.db'}",
        BANK_RESPONSE_DELAY_MS=0,
        BANK_CAPTURE_DELAY_MS=0,
        BANK_VOID_DELAY_MS=0,
    )


@pytest.fixture
def bank():
    sim = BankSimulator(success_rate=1.0, response_delay=0, capture_delay=0, void_delay=0,
                        rng=random.Random(1234))
    sim.capture_success_rate = 1.0
    return sim


@pytest.fixture
async def core(settings, bank):
    c = TerminalCore(settings, bank=bank)
    await c.init()
    yield c
    await c.close()


@pytest.fixture
async def terminal(core):
    """Terminal T1 registered on the channel through a fake connection."""
    conn = FakeConnection()
    await core.channel.register("T1", conn)
    return conn
