"""Line transport over asyncio streams.

This is the boundary between the relay engine and byte I/O. The engine
only sees whole text lines:

- read_lines(): yields each received line; ends on disconnect
- write_line(): buffers one line for sending
- drain(): waits until buffered output was flushed
- close(): closes the connection (idempotent)

Framing: lines are split on LF and a trailing CR is stripped. Outgoing
lines are terminated with CRLF as SVDRP expects.
"""

import asyncio
from typing import AsyncIterator, Optional

import structlog


LINE_TERMINATOR = "\r\n"
MAX_LINE_LENGTH = 64 * 1024


log = structlog.get_logger()


class LineConnection:
    """A line-framed text connection wrapping an asyncio stream pair.

    Attributes:
        name: Label used in log events (usually the peer address).
        encoding: Text encoding for both directions.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        encoding: str = "utf-8",
        name: Optional[str] = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.encoding = encoding
        if name is None:
            peer = writer.get_extra_info("peername")
            name = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once close() was called or the transport is closing."""
        return self._closed or self._writer.is_closing()

    @property
    def buffered(self) -> int:
        """Bytes written but not yet handed to the OS."""
        transport = self._writer.transport
        if transport is None or transport.is_closing():
            return 0
        return transport.get_write_buffer_size()

    async def read_lines(self) -> AsyncIterator[str]:
        """Yield received lines until the peer disconnects.

        Lines longer than MAX_LINE_LENGTH are discarded up to their
        terminator and reading continues with the next line.
        """
        while not self._closed:
            try:
                data = await self._read_line()
            except ConnectionError:
                return

            if not data:
                return  # EOF

            yield data.decode(self.encoding, errors="replace").rstrip("\r\n")

    async def _read_line(self) -> bytes:
        discarding = False
        while True:
            try:
                data = await self._reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                return b"" if discarding else e.partial
            except asyncio.LimitOverrunError as e:
                if not discarding:
                    log.warning(
                        "line_too_long",
                        connection=self.name,
                        limit=MAX_LINE_LENGTH,
                    )
                    discarding = True
                await self._reader.readexactly(e.consumed)
                continue

            if discarding:
                # Tail of the oversized line
                discarding = False
                continue
            return data

    def write_line(self, line: str) -> None:
        """Buffer a single line for sending. No-op on a closed connection."""
        if self.closed:
            return
        self._writer.write((line + LINE_TERMINATOR).encode(self.encoding, errors="replace"))

    async def drain(self) -> None:
        """Wait until buffered output was handed to the OS."""
        if self._writer.is_closing():
            return
        try:
            await self._writer.drain()
        except (ConnectionError, RuntimeError):
            # Peer went away while flushing; nothing left to deliver to.
            pass

    def abort(self) -> None:
        """Close at once, discarding any buffered output."""
        self._closed = True
        self._writer.transport.abort()

    def close(self) -> None:
        """Close the connection. Closing twice is tolerated."""
        if self._closed:
            return
        self._closed = True
        self._writer.close()

    async def wait_closed(self) -> None:
        """Wait until the underlying transport is fully closed."""
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def open_line_connection(
    host: str,
    port: int,
    *,
    timeout: float = 5.0,
    encoding: str = "utf-8",
) -> LineConnection:
    """Connect to host:port and wrap the streams in a LineConnection.

    Raises:
        OSError: If the connection is refused or unreachable.
        asyncio.TimeoutError: If connecting takes longer than timeout.
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port, limit=MAX_LINE_LENGTH),
        timeout=timeout,
    )
    return LineConnection(reader, writer, encoding=encoding, name=f"{host}:{port}")
