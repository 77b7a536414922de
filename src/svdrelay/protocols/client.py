"""Client handle protocol for svdrelay.

The Relay only ever holds back-references to client sessions: it looks
them up to deliver response lines and to check whether a queued command
still has a live originator. It never opens or closes a session.

The protocol is marked `@runtime_checkable` to enable isinstance() checks.

Usage:
    from svdrelay.protocols import ClientHandle

    assert isinstance(session, ClientHandle)
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ClientHandle(Protocol):
    """Protocol for anything the Relay can route responses to.

    Note:
        Implementations do NOT need to inherit from this class.
    """

    @property
    def session_id(self) -> str:
        """Stable identifier used in logs."""
        ...

    @property
    def connected(self) -> bool:
        """True while responses can still be delivered."""
        ...

    def deliver(self, line: str) -> None:
        """Send one response line to the client.

        Raises:
            StaleHandleError: If the client has already disconnected.
        """
        ...
