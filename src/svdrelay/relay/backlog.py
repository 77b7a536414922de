"""Command backlog with configurable ordering.

The backlog has two lanes:

- priority: commands that must go next regardless of ordering (the
  in-flight command retried after a backend disconnect, the relay's
  own quit). Front insertion.
- ordinary: client submissions, ordered by BacklogOrdering. LIFO (the
  default) serves the most recently submitted command first; FIFO serves
  in arrival order.

Commands whose originator disconnected are purged lazily when they
reach the front, never eagerly.
"""

from collections import deque
from enum import StrEnum
from typing import Deque, Iterator, Optional

import structlog

from svdrelay.relay.command import Command


log = structlog.get_logger()


class BacklogOrdering(StrEnum):
    """Order in which ordinary submissions are served."""

    LIFO = "lifo"
    FIFO = "fifo"


class Backlog:
    """Ordered commands awaiting dispatch."""

    def __init__(self, ordering: BacklogOrdering = BacklogOrdering.LIFO) -> None:
        self.ordering = BacklogOrdering(ordering)
        self._priority: Deque[Command] = deque()
        self._ordinary: Deque[Command] = deque()

    def __len__(self) -> int:
        return len(self._priority) + len(self._ordinary)

    def __iter__(self) -> Iterator[Command]:
        """Iterate in dispatch order (dead commands included)."""
        yield from self._priority
        yield from self._ordinary

    def push(self, command: Command) -> None:
        """Queue a newly submitted command according to the ordering."""
        if self.ordering is BacklogOrdering.LIFO:
            self._ordinary.appendleft(command)
        else:
            self._ordinary.append(command)

    def push_front(self, command: Command) -> None:
        """Queue a command ahead of everything else."""
        self._priority.appendleft(command)

    def peek_live(self) -> Optional[Command]:
        """Return the next live command without removing it.

        Dead commands found at the front are discarded on the way.
        """
        for lane in (self._priority, self._ordinary):
            while lane:
                command = lane[0]
                if command.is_live:
                    return command
                lane.popleft()
                log.debug("stale_command_discarded", owner=command.owner)
        return None

    def pop_live(self) -> Optional[Command]:
        """Remove and return the next live command, if any."""
        command = self.peek_live()
        if command is None:
            return None
        if self._priority and self._priority[0] is command:
            return self._priority.popleft()
        return self._ordinary.popleft()

    def clear(self) -> int:
        """Drop everything. Returns the number of discarded commands."""
        count = len(self)
        self._priority.clear()
        self._ordinary.clear()
        return count
