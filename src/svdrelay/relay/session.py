"""Client session: one per connected client.

Speaks the client side of the relay protocol:

    220 <host> <service> <version>; <timestamp>     on connect
    <backend status lines, verbatim>                per command
    221 <host> closing connection (<reason>)        on quit/shutdown

Every other non-empty line is forwarded to the Relay as a command.

States:
    GREETED → ACTIVE → CLOSING → CLOSED

In CLOSING the goodbye line is queued and the socket is closed only after
all buffered output has been flushed. A client that stops reading while
more than max_output_buffer bytes are pending is disconnected at once,
without a goodbye.
"""

import asyncio
import itertools
import time
from enum import StrEnum
from typing import TYPE_CHECKING, Optional

import structlog

from svdrelay import __version__
from svdrelay.core.exceptions import (
    InvalidCommandError,
    RelayClosedError,
    StaleHandleError,
)
from svdrelay.core.tracing import Tracer
from svdrelay.relay.transport import LineConnection

if TYPE_CHECKING:
    from svdrelay.relay.relay import Relay


QUIT_COMMAND = "quit"
DEFAULT_CLOSE_REASON = "quit"
RELAY_CLOSED_REASON = "relay shutting down"
MAX_OUTPUT_BUFFER = 1024 * 1024


log = structlog.get_logger()

_session_ids = itertools.count(1)


class SessionState(StrEnum):
    """Client session states."""

    GREETED = "GREETED"
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


def format_greeting(hostname: str, service_name: str, version: str) -> str:
    """Build the 220 greeting line."""
    timestamp = time.strftime("%a %b %d %H:%M:%S %Y")
    return f"220 {hostname} {service_name} {version}; {timestamp}"


def format_goodbye(hostname: str, reason: str) -> str:
    """Build the 221 goodbye line."""
    return f"221 {hostname} closing connection ({reason})"


class ClientSession:
    """A connected client, forwarding its commands into the Relay.

    Attributes:
        session_id: Unique identifier used in logs.
        peer: Remote address label.
    """

    def __init__(
        self,
        relay: "Relay",
        connection: LineConnection,
        *,
        hostname: str,
        service_name: str = "SVDRP-Relay",
        version: str = __version__,
        max_output_buffer: int = MAX_OUTPUT_BUFFER,
        trace: bool = False,
    ) -> None:
        self._relay = relay
        self._conn = connection
        self._hostname = hostname
        self._service_name = service_name
        self._version = version
        self._max_output_buffer = max_output_buffer
        self.session_id = f"client-{next(_session_ids)}"
        self.peer = connection.name
        self._state = SessionState.GREETED
        self._close_task: Optional[asyncio.Task] = None
        self._trace = Tracer(trace, component="session", session_id=self.session_id)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        """True while responses can still be delivered to the client."""
        return (
            self._state in (SessionState.GREETED, SessionState.ACTIVE)
            and not self._conn.closed
        )

    def start(self) -> None:
        """Send the greeting and start accepting commands."""
        self._conn.write_line(
            format_greeting(self._hostname, self._service_name, self._version)
        )
        self._state = SessionState.ACTIVE
        self._trace("session_active", peer=self.peer)

    def deliver(self, line: str) -> None:
        """Send one backend response line to the client.

        Raises:
            StaleHandleError: If the session is closing or closed.
        """
        if not self.connected:
            raise StaleHandleError(self.session_id)
        self._conn.write_line(line)
        if self._conn.buffered > self._max_output_buffer:
            self._drop_slow_client()

    def on_line(self, line: str) -> None:
        """Handle one line received from the client."""
        if self._state is not SessionState.ACTIVE:
            return

        text = line.strip()
        if text.lower() == QUIT_COMMAND:
            self.close()
            return

        try:
            self._relay.submit(self, text)
        except InvalidCommandError:
            self._trace("blank_line_ignored")
        except RelayClosedError:
            self.close(RELAY_CLOSED_REASON)

    def close(self, reason: str = DEFAULT_CLOSE_REASON) -> None:
        """Say goodbye, then close once buffered output is flushed.

        Calling close() on a closing or closed session does nothing.
        """
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self._state = SessionState.CLOSING
        self._conn.write_line(format_goodbye(self._hostname, reason))
        log.info("client_closing", session_id=self.session_id, reason=reason)
        self._close_task = asyncio.get_running_loop().create_task(
            self._drain_and_close(), name=f"close-{self.session_id}"
        )

    def _drop_slow_client(self) -> None:
        # No goodbye: the client is not reading what is already queued
        log.warning(
            "client_too_slow",
            session_id=self.session_id,
            buffered=self._conn.buffered,
            limit=self._max_output_buffer,
        )
        self._state = SessionState.CLOSING
        self._conn.abort()

    def shutdown(self, reason: str) -> None:
        """Close on behalf of the acceptor."""
        self.close(reason)

    async def _drain_and_close(self) -> None:
        await self._conn.drain()
        self._conn.close()
        await self._conn.wait_closed()
        self._state = SessionState.CLOSED
        self._trace("session_closed")

    async def run(self) -> None:
        """Greet the client and process its lines until it goes away."""
        self.start()
        log.info("client_connected", session_id=self.session_id, peer=self.peer)
        try:
            async for line in self._conn.read_lines():
                self.on_line(line)
                if self._state is not SessionState.ACTIVE:
                    break
        finally:
            if self._close_task is not None:
                await self._close_task
            else:
                self._conn.close()
            self._state = SessionState.CLOSED
            log.info("client_disconnected", session_id=self.session_id)
