"""Client acceptor: listens for clients and creates their sessions.

One ClientSession per accepted connection, each sharing the same Relay.
Connections beyond max_clients are closed immediately.
"""

import asyncio
from typing import Callable, Optional, Set

import structlog

from svdrelay import __version__
from svdrelay.relay.relay import Relay
from svdrelay.relay.session import MAX_OUTPUT_BUFFER, ClientSession
from svdrelay.relay.transport import MAX_LINE_LENGTH, LineConnection


log = structlog.get_logger()


class ClientAcceptor:
    """TCP listener for relay clients.

    Attributes:
        host: Listen address.
        max_clients: Maximum number of concurrent sessions.
    """

    def __init__(
        self,
        relay: Relay,
        host: str = "127.0.0.1",
        port: int = 6419,
        *,
        hostname: str,
        service_name: str = "SVDRP-Relay",
        max_clients: int = 100,
        max_output_buffer: int = MAX_OUTPUT_BUFFER,
        encoding: str = "utf-8",
        trace: bool = False,
        on_fault: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        """Initialize ClientAcceptor.

        Args:
            relay: Shared relay injected into every session.
            host: Address to listen on.
            port: Port to listen on (0 picks a free port).
            hostname: Host identity announced to clients.
            service_name: Service name announced in the greeting.
            max_clients: Connection limit.
            max_output_buffer: Pending output bytes after which a client
                that is not reading is disconnected.
            encoding: Client text encoding.
            trace: Enable session trace events.
            on_fault: Called with unexpected session exceptions.
        """
        self._relay = relay
        self.host = host
        self._port = port
        self._hostname = hostname
        self._service_name = service_name
        self.max_clients = max_clients
        self._max_output_buffer = max_output_buffer
        self._encoding = encoding
        self._trace = trace
        self._on_fault = on_fault

        self._server: Optional[asyncio.Server] = None
        self._sessions: Set[ClientSession] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def port(self) -> int:
        """Bound port (the actual one when started with port 0)."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    @property
    def sessions(self) -> frozenset[ClientSession]:
        """Live sessions."""
        return frozenset(self._sessions)

    async def start(self) -> None:
        """Start listening.

        Raises:
            OSError: If the address cannot be bound.
        """
        self._server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self._port,
            limit=MAX_LINE_LENGTH,
        )
        log.info("acceptor_listening", host=self.host, port=self.port)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if self._closing or len(self._sessions) >= self.max_clients:
            log.warning(
                "client_rejected",
                limit=self.max_clients,
                closing=self._closing,
            )
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            return

        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)

        connection = LineConnection(reader, writer, encoding=self._encoding)
        session = ClientSession(
            self._relay,
            connection,
            hostname=self._hostname,
            service_name=self._service_name,
            version=__version__,
            max_output_buffer=self._max_output_buffer,
            trace=self._trace,
        )
        self._sessions.add(session)
        try:
            await session.run()
        except Exception as e:
            log.exception(
                "client_session_failed",
                session_id=session.session_id,
                error=str(e),
            )
            connection.close()
            if self._on_fault is not None:
                self._on_fault(e)
        finally:
            self._sessions.discard(session)
            if task is not None:
                self._tasks.discard(task)

    def shutdown(self, reason: str) -> None:
        """Stop accepting and close every live session with reason."""
        if self._closing:
            return
        self._closing = True
        if self._server is not None:
            self._server.close()
        log.info("acceptor_shutdown", reason=reason, sessions=len(self._sessions))
        for session in list(self._sessions):
            session.shutdown(reason)

    async def wait_closed(self, timeout: float = 5.0) -> None:
        """Wait for all sessions to finish and the listener to close."""
        if self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                log.warning("acceptor_sessions_still_open", count=len(pending))
                for task in pending:
                    task.cancel()

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("acceptor_close_timeout")
