"""svdrelay relay engine.

Components:
- transport: line-framed asyncio connections (the I/O boundary)
- command: Command variants and backend status line parsing
- backlog: pending commands with LIFO/FIFO ordering
- backoff: reconnect backoff policy
- relay: backend connection state machine and response routing
- session: per-client protocol handling
- acceptor: client listener
- supervisor: composition root, fault handling and restart loop
"""

from svdrelay.relay.acceptor import ClientAcceptor
from svdrelay.relay.backlog import Backlog, BacklogOrdering
from svdrelay.relay.backoff import ReconnectPolicy
from svdrelay.relay.command import Command, CommandKind, StatusLine
from svdrelay.relay.relay import BackendState, Relay
from svdrelay.relay.session import ClientSession, SessionState
from svdrelay.relay.supervisor import Supervisor, run_relay
from svdrelay.relay.transport import LineConnection, open_line_connection

__all__ = [
    "Backlog",
    "BacklogOrdering",
    "BackendState",
    "ClientAcceptor",
    "ClientSession",
    "Command",
    "CommandKind",
    "LineConnection",
    "ReconnectPolicy",
    "Relay",
    "SessionState",
    "StatusLine",
    "Supervisor",
    "open_line_connection",
    "run_relay",
]
