"""
Terminal channel — registry of live terminal connections.

Owns the only shared mutable structure in the core, the terminal-id →
connection map. It is mutated from the event loop only, so no locking; the
rules that matter are "newer registration replaces" and "unregister by
connection identity".
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NewType, Optional, Protocol, runtime_checkable

from posterm.core.logging import get_logger
from posterm.services.events import OutboundEvent, TerminalConfig, TerminalConfigEvent

logger = get_logger(__name__)

# Key of the connection map. Shares its value with the persisted terminal id
# but is kept as a distinct type so the state machine never depends on it.
ChannelKey = NewType("ChannelKey", str)


def channel_key(terminal_id: object) -> Optional[ChannelKey]:
    """Normalise untrusted terminal ids; blank or non-string ids have no key."""
    if not isinstance(terminal_id, str) or not terminal_id.strip():
        return None
    return ChannelKey(terminal_id)


@runtime_checkable
class TerminalConnection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: dict) -> None: ...

    async def close(self) -> None: ...


@dataclass
class ChannelEntry:
    terminal_id: str
    connection: TerminalConnection
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def alive(self) -> bool:
        return bool(self.connection.is_open)


class TerminalChannel:
    def __init__(self) -> None:
        self._entries: dict[ChannelKey, ChannelEntry] = {}

    async def register(
        self,
        terminal_id: str,
        connection: TerminalConnection,
        config: TerminalConfig | None = None,
    ) -> bool:
        """Make ``connection`` the live handle for ``terminal_id`` and ack it."""
        key = channel_key(terminal_id)
        if key is None:
            raise ValueError("Valid Terminal ID is required")

        previous = self._entries.get(key)
        if previous is not None and previous.connection is not connection:
            logger.info("Terminal %s re-registered; replacing previous connection", key)
        self._entries[key] = ChannelEntry(terminal_id=key, connection=connection)
        logger.info("Terminal %s connected and ready", key)

        return await self.send(key, TerminalConfigEvent(terminal_id=key, config=config or TerminalConfig()))

    def unregister(self, connection: TerminalConnection) -> Optional[str]:
        """Drop the entry whose handle *is* ``connection``; return its terminal id."""
        for key, entry in list(self._entries.items()):
            if entry.connection is connection:
                del self._entries[key]
                logger.info("Terminal %s disconnected", key)
                return key
        return None

    async def send(self, terminal_id: str, event: OutboundEvent) -> bool:
        """Hand ``event`` to the terminal's transport.

        Returns ``False`` (never raises) when the terminal has no live
        connection or the transport refuses the frame.
        """
        key = channel_key(terminal_id)
        entry = self._entries.get(key) if key else None
        if entry is None or not entry.alive:
            logger.debug("send to %s skipped: not connected (%s)", terminal_id, event.type)
            return False
        try:
            await entry.connection.send_json(event.to_wire())
        except Exception as exc:
            logger.warning("send to %s failed (%s): %s", terminal_id, event.type, exc)
            return False
        return True

    def is_connected(self, terminal_id: object) -> bool:
        key = channel_key(terminal_id)
        if key is None:
            return False
        entry = self._entries.get(key)
        return entry is not None and entry.alive

    def is_registered(self, terminal_id: object, connection: TerminalConnection) -> bool:
        """True only if ``connection`` itself is the live handle for ``terminal_id``."""
        key = channel_key(terminal_id)
        entry = self._entries.get(key) if key else None
        return entry is not None and entry.connection is connection and entry.alive

    def get_connected_terminals(self) -> list[str]:
        return [key for key, entry in self._entries.items() if entry.alive]

    async def close_all(self) -> None:
        for entry in list(self._entries.values()):
            try:
                await entry.connection.close()
            except Exception as exc:
                logger.warning("closing terminal %s failed: %s", entry.terminal_id, exc)
        self._entries.clear()
