"""Relay: serializes client commands onto one backend connection.

The backend answers one command at a time. The Relay owns the single
backend connection, the backlog of pending commands and the in-flight
slot, and routes every backend status line to the client whose command
is in flight.

Backend States:
    DISCONNECTED: No connection. Work in the backlog starts a connect.
    CONNECTING: A connect attempt (with backoff retries) is running.
    CONNECTED: Connection open. The in-flight slot is primed with the
        greeting sentinel on every (re)connect so the banner is absorbed
        like any other response.

Dispatch runs after every submit, every completed response and every
(re)connect:
    1. quitting and not connected → nothing more to do (terminal)
    2. a command is in flight → wait (no pipelining)
    3. find the next live command, discarding dead ones
    4. not connected → leave it queued and start connecting
    5. otherwise write it to the backend and mark it in flight

All public methods are synchronous, so each state transition completes
without interleaving with any other.

Usage:
    relay = Relay("localhost", 2001)
    relay.submit(session, "LSTE")
    ...
    relay.shutdown("stopping")
    await relay.wait_closed()
"""

import asyncio
from enum import StrEnum
from functools import partial
from typing import Awaitable, Callable, Coroutine, Any, Optional

import structlog

from svdrelay.core.exceptions import (
    BackendUnavailableError,
    InvalidCommandError,
    RelayClosedError,
    StaleHandleError,
)
from svdrelay.core.tracing import Tracer
from svdrelay.protocols import ClientHandle
from svdrelay.relay.backlog import Backlog, BacklogOrdering
from svdrelay.relay.backoff import ReconnectPolicy
from svdrelay.relay.command import CODE_CLOSING, Command, CommandKind, StatusLine
from svdrelay.relay.transport import LineConnection, open_line_connection


log = structlog.get_logger()


# Opens a backend connection: (host, port) -> LineConnection
Connector = Callable[[str, int], Awaitable[LineConnection]]

# Receives unexpected exceptions from background tasks
FaultHandler = Callable[[BaseException], None]

DEFAULT_MAX_REPLAYS = 3

# Sent to a client whose command kept losing the backend connection
REPLAY_FAILED_LINE = "451 Requested action aborted: backend connection lost"


class BackendState(StrEnum):
    """Backend link states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class Relay:
    """Multiplexes many clients onto a single-session backend.

    Attributes:
        host: Backend host.
        port: Backend port.
        commands_dispatched: Number of commands written to the backend.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        ordering: BacklogOrdering = BacklogOrdering.LIFO,
        policy: Optional[ReconnectPolicy] = None,
        connector: Optional[Connector] = None,
        connect_timeout: float = 5.0,
        encoding: str = "utf-8",
        trace: bool = False,
        max_replays: int = DEFAULT_MAX_REPLAYS,
        on_fault: Optional[FaultHandler] = None,
    ) -> None:
        """Initialize the Relay in DISCONNECTED state.

        Args:
            host: Backend host.
            port: Backend port.
            ordering: Order in which queued client commands are served.
            policy: Backoff between failed connect attempts.
            connector: Coroutine function opening the backend connection.
                Defaults to a TCP line connection.
            connect_timeout: Timeout for a single connect attempt.
            encoding: Backend text encoding.
            trace: Emit trace events for every transition.
            max_replays: How often one command is resent after the
                backend dropped without answering it before it is failed.
            on_fault: Called with unexpected exceptions raised in
                background tasks.
        """
        self.host = host
        self.port = port
        self._backlog = Backlog(ordering)
        self._policy = policy or ReconnectPolicy()
        self._connector: Connector = connector or partial(
            open_line_connection, timeout=connect_timeout, encoding=encoding
        )
        self._on_fault = on_fault
        self._max_replays = max_replays
        self._trace = Tracer(trace, component="relay", backend=f"{host}:{port}")

        self._state = BackendState.DISCONNECTED
        self._conn: Optional[LineConnection] = None
        self._in_flight: Optional[Command] = None
        self._replayed: Optional[Command] = None
        self._replays = 0
        self._quitting = False
        self._shutdown_reason: Optional[str] = None
        self._closed = asyncio.Event()

        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None

        self.commands_dispatched = 0

    @property
    def state(self) -> BackendState:
        """Current backend link state."""
        return self._state

    @property
    def in_flight(self) -> Optional[Command]:
        """Command awaiting its backend response, if any."""
        return self._in_flight

    @property
    def backlog_size(self) -> int:
        """Number of queued commands (dead ones included until purged)."""
        return len(self._backlog)

    @property
    def quitting(self) -> bool:
        """True once shutdown was requested."""
        return self._quitting

    @property
    def closed(self) -> bool:
        """True once the relay is inert."""
        return self._closed.is_set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self, client: ClientHandle, text: str) -> None:
        """Queue a client command and dispatch if the backend is free.

        Args:
            client: The submitting client.
            text: Command line. Surrounding whitespace is trimmed.

        Raises:
            RelayClosedError: If shutdown was requested.
            InvalidCommandError: If text is empty after trimming.
        """
        if self._quitting:
            raise RelayClosedError(self._shutdown_reason)

        text = text.strip()
        if not text:
            raise InvalidCommandError(text)

        self._backlog.push(Command(text=text, originator=client))
        self._trace(
            "command_queued",
            owner=client.session_id,
            command=text,
            backlog=len(self._backlog),
        )
        self._dispatch()

    def on_backend_line(self, line: str) -> None:
        """Route one backend line to the in-flight command's originator.

        Non-status lines and the backend's 221 closing notice are ignored.
        A final status line completes the in-flight command.
        """
        status = StatusLine.parse(line)
        if status is None:
            log.debug("backend_line_ignored", line=line)
            return

        if status.code == CODE_CLOSING:
            self._trace("backend_closing_notice", line=line)
            return

        command = self._in_flight
        if command is None:
            log.warning("unsolicited_backend_line", line=line)
            return

        if command is self._replayed:
            self._replayed, self._replays = None, 0

        if command.originator is not None:
            self._deliver(command.originator, status.raw)
        elif command.kind is CommandKind.GREETING:
            log.info("backend_greeting", banner=status.text, code=status.code)

        if status.final:
            self._in_flight = None
            self._trace("response_complete", owner=command.owner, code=status.code)
            self._dispatch()

    def on_backend_disconnected(self) -> None:
        """Handle loss of the backend connection.

        The in-flight client command goes back to the front of the
        backlog so it is the first command written after reconnecting.
        A command replayed more than max_replays times without any
        response line is failed with a 451 line instead.
        """
        conn, self._conn = self._conn, None
        self._reader_task = None
        if conn is not None:
            conn.close()

        command, self._in_flight = self._in_flight, None
        requeued = command is not None and command.kind is CommandKind.CLIENT
        if requeued and not self._count_replay(command):
            requeued = False
            self._fail(command)
        elif requeued:
            self._backlog.push_front(command)

        self._state = BackendState.DISCONNECTED
        log.info(
            "backend_disconnected",
            backend=f"{self.host}:{self.port}",
            requeued=command.owner if requeued else None,
            backlog=len(self._backlog),
        )

        if self._quitting:
            self._mark_closed()
            return

        self._dispatch()

    def shutdown(self, reason: str = "shutdown") -> None:
        """Stop accepting commands and say goodbye to the backend.

        When connected, a quit command is queued ahead of everything and
        the relay becomes inert once the backend closes the connection.
        Otherwise it becomes inert immediately.
        """
        if self._quitting:
            return
        self._quitting = True
        self._shutdown_reason = reason
        log.info("relay_shutdown_requested", reason=reason, state=str(self._state))

        if self._state is BackendState.CONNECTED:
            self._backlog.push_front(Command.quit())
            self._dispatch()
            return

        self._cancel_connect()
        self._state = BackendState.DISCONNECTED
        self._mark_closed()

    def abort(self) -> None:
        """Drop the backend connection and background tasks at once."""
        if not self._quitting:
            self._quitting = True
            self._shutdown_reason = "aborted"
        self._cancel_connect()

        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            self._reader_task = None

        self._in_flight = None
        self._state = BackendState.DISCONNECTED
        self._mark_closed()

    def ensure_connected(self) -> None:
        """Start connecting now instead of on the first command."""
        if not self._quitting:
            self._start_connect()

    async def wait_closed(self) -> None:
        """Wait until the relay is inert."""
        await self._closed.wait()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self) -> None:
        if self._quitting and self._state is not BackendState.CONNECTED:
            return

        if self._in_flight is not None:
            return

        command = self._backlog.peek_live()
        if command is None:
            return

        if self._state is not BackendState.CONNECTED or self._conn is None:
            self._start_connect()
            return

        self._backlog.pop_live()
        self._in_flight = command
        self._conn.write_line(command.text)
        self.commands_dispatched += 1
        self._trace(
            "command_dispatched",
            owner=command.owner,
            command=command.text,
            backlog=len(self._backlog),
        )

    def _deliver(self, client: ClientHandle, line: str) -> None:
        if not client.connected:
            self._trace("delivery_skipped", owner=client.session_id, line=line)
            return
        try:
            client.deliver(line)
        except StaleHandleError as e:
            self._trace("delivery_dropped", **e.context)

    def _count_replay(self, command: Command) -> bool:
        """Record one more replay of command. False once the limit is hit."""
        if command is not self._replayed:
            self._replayed, self._replays = command, 0
        self._replays += 1
        return self._replays <= self._max_replays

    def _fail(self, command: Command) -> None:
        log.warning(
            "command_failed",
            owner=command.owner,
            command=command.text,
            replays=self._max_replays,
        )
        self._replayed, self._replays = None, 0
        if command.originator is not None:
            self._deliver(command.originator, REPLAY_FAILED_LINE)

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        dropped = self._backlog.clear()
        self._closed.set()
        log.info("relay_closed", reason=self._shutdown_reason, dropped=dropped)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _start_connect(self) -> None:
        if self._state is not BackendState.DISCONNECTED:
            return
        self._state = BackendState.CONNECTING
        self._trace("backend_connecting")
        self._connect_task = self._spawn(self._connect_loop(), name="relay-connect")

    def _cancel_connect(self) -> None:
        if self._connect_task is not None:
            self._connect_task.cancel()
            self._connect_task = None

    async def _connect_loop(self) -> None:
        attempt = 0
        while True:
            try:
                conn = await self._connector(self.host, self.port)
            except (OSError, asyncio.TimeoutError) as e:
                error = BackendUnavailableError(
                    self.host, self.port, str(e) or type(e).__name__
                )
                delay = self._policy.delay(attempt)
                attempt += 1
                log.warning(
                    "backend_unavailable",
                    attempt=attempt,
                    retry_in=round(delay, 3),
                    **error.context,
                )
                await asyncio.sleep(delay)
                continue
            break

        self._connect_task = None
        self._on_connected(conn)

    def _on_connected(self, conn: LineConnection) -> None:
        if self._quitting:
            conn.close()
            return

        self._conn = conn
        self._state = BackendState.CONNECTED
        self._in_flight = Command.greeting()
        log.info(
            "backend_connected",
            backend=f"{self.host}:{self.port}",
            backlog=len(self._backlog),
        )
        self._reader_task = self._spawn(
            self._read_backend(conn), name="relay-backend-reader"
        )

    async def _read_backend(self, conn: LineConnection) -> None:
        try:
            async for line in conn.read_lines():
                if conn is not self._conn:
                    break
                self.on_backend_line(line)
        finally:
            conn.close()
            if conn is self._conn:
                self.on_backend_disconnected()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        """Log exceptions from background tasks and report them as faults."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        log.error("relay_task_failed", task=task.get_name(), error=str(exc), exc_info=exc)
        if self._on_fault is not None:
            self._on_fault(exc)
