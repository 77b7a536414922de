"""Commands and backend status lines.

A Command is one unit of work for the backend. It is a tagged variant:

    CLIENT    submitted by a connected client (has an originator)
    GREETING  sentinel occupying the in-flight slot right after connect,
              absorbing the backend's unsolicited banner
    QUIT      synthetic quit sent with priority on shutdown

Backend responses are status lines: ``<3-digit code><sep><text>`` where
``sep`` is ``-`` when more lines follow and a space on the final line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from svdrelay.protocols import ClientHandle


STATUS_LINE_PATTERN = re.compile(r"^(\d{3})([ -])(.*)$")

# Backend's own "closing connection" notice
CODE_CLOSING = 221

QUIT_TEXT = "QUIT"


class CommandKind(StrEnum):
    """Command variants."""

    CLIENT = "client"
    GREETING = "greeting"
    QUIT = "quit"


@dataclass(frozen=True, eq=False)
class Command:
    """An immutable command awaiting or undergoing dispatch.

    Equality is identity: two submissions of the same text are distinct
    commands.

    Attributes:
        text: Command line sent to the backend (opaque).
        originator: Client that submitted it; None for synthetic commands.
        kind: Variant tag.
    """

    text: str
    originator: Optional[ClientHandle] = None
    kind: CommandKind = CommandKind.CLIENT

    @classmethod
    def greeting(cls) -> "Command":
        """Sentinel absorbing the backend banner after a (re)connect."""
        return cls(text="", kind=CommandKind.GREETING)

    @classmethod
    def quit(cls) -> "Command":
        """Synthetic quit issued by the relay itself."""
        return cls(text=QUIT_TEXT, kind=CommandKind.QUIT)

    @property
    def is_live(self) -> bool:
        """Whether dispatching this command still has any effect."""
        if self.kind is CommandKind.QUIT:
            return True
        if self.kind is CommandKind.GREETING or self.originator is None:
            return False
        return self.originator.connected

    @property
    def owner(self) -> str:
        """Originator id for logging."""
        if self.originator is None:
            return str(self.kind)
        return self.originator.session_id


@dataclass(frozen=True)
class StatusLine:
    """A parsed backend response line.

    Attributes:
        code: Three-digit status code.
        final: True when this is the last line of the response.
        text: Free text after the separator.
        raw: The line exactly as received.
    """

    code: int
    final: bool
    text: str
    raw: str

    @classmethod
    def parse(cls, line: str) -> Optional["StatusLine"]:
        """Parse a backend line; None if it is not a status line."""
        match = STATUS_LINE_PATTERN.match(line)
        if match is None:
            return None
        code, sep, text = match.groups()
        return cls(code=int(code), final=(sep == " "), text=text, raw=line)
