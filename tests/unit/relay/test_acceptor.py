"""Unit tests for ClientAcceptor using loopback sockets."""

import asyncio

import pytest
import pytest_asyncio

from svdrelay.relay.acceptor import ClientAcceptor
from svdrelay.relay.relay import BackendState, Relay


@pytest_asyncio.fixture
async def stack(fake_backend, instant_policy):
    """A relay on the fake backend plus a started acceptor on a free port."""
    relay = Relay("localhost", 2001, connector=fake_backend.connect, policy=instant_policy)
    acceptor = ClientAcceptor(relay, "127.0.0.1", 0, hostname="testhost", max_clients=2)
    await acceptor.start()
    yield relay, acceptor
    acceptor.shutdown("test over")
    relay.abort()
    await acceptor.wait_closed(timeout=1.0)


async def open_client(acceptor: ClientAcceptor):
    reader, writer = await asyncio.open_connection("127.0.0.1", acceptor.port)
    greeting = await asyncio.wait_for(reader.readline(), timeout=2.0)
    return reader, writer, greeting


class TestClientAcceptor:
    """Tests for accepting, routing and shutdown."""

    @pytest.mark.asyncio
    async def test_client_receives_greeting(self, stack, until) -> None:
        relay, acceptor = stack
        assert acceptor.port != 0
        reader, writer, greeting = await open_client(acceptor)
        assert greeting.startswith(b"220 testhost SVDRP-Relay ")
        assert greeting.endswith(b"\r\n")
        await until(lambda: len(acceptor.sessions) == 1)
        writer.close()

    @pytest.mark.asyncio
    async def test_command_round_trip(self, stack, fake_backend, until, banner) -> None:
        relay, acceptor = stack
        reader, writer, _ = await open_client(acceptor)

        writer.write(b"LSTE\r\n")
        await writer.drain()
        await until(lambda: relay.state is BackendState.CONNECTED)
        fake_backend.conn.feed(banner)
        await until(lambda: fake_backend.conn.written == ["LSTE"])

        fake_backend.conn.feed("250 1 ...")
        line = await asyncio.wait_for(reader.readline(), timeout=2.0)
        assert line == b"250 1 ...\r\n"
        writer.close()

    @pytest.mark.asyncio
    async def test_responses_go_to_originator_only(
        self, stack, fake_backend, until, banner
    ) -> None:
        relay, acceptor = stack
        reader_a, writer_a, _ = await open_client(acceptor)
        reader_b, writer_b, _ = await open_client(acceptor)

        writer_a.write(b"STAT disk\r\n")
        await writer_a.drain()
        await until(lambda: relay.state is BackendState.CONNECTED)
        fake_backend.conn.feed(banner)
        await until(lambda: fake_backend.conn.written == ["STAT disk"])

        writer_b.write(b"VOLU\r\n")
        await writer_b.drain()
        await until(lambda: relay.backlog_size == 1)

        fake_backend.conn.feed("250 1000MB 500MB 50%")
        assert await asyncio.wait_for(reader_a.readline(), 2.0) == b"250 1000MB 500MB 50%\r\n"
        await until(lambda: fake_backend.conn.written == ["STAT disk", "VOLU"])

        fake_backend.conn.feed("250 Audio volume is 255")
        assert await asyncio.wait_for(reader_b.readline(), 2.0) == b"250 Audio volume is 255\r\n"
        writer_a.close()
        writer_b.close()

    @pytest.mark.asyncio
    async def test_quit_closes_connection(self, stack, until) -> None:
        relay, acceptor = stack
        reader, writer, _ = await open_client(acceptor)
        writer.write(b"QUIT\r\n")
        await writer.drain()

        goodbye = await asyncio.wait_for(reader.readline(), 2.0)
        assert goodbye == b"221 testhost closing connection (quit)\r\n"
        assert await asyncio.wait_for(reader.read(), 2.0) == b""
        await until(lambda: len(acceptor.sessions) == 0)

    @pytest.mark.asyncio
    async def test_max_clients_enforced(self, stack, until) -> None:
        relay, acceptor = stack
        first = await open_client(acceptor)
        second = await open_client(acceptor)
        await until(lambda: len(acceptor.sessions) == 2)

        reader, writer = await asyncio.open_connection("127.0.0.1", acceptor.port)
        assert await asyncio.wait_for(reader.read(), 2.0) == b""
        assert len(acceptor.sessions) == 2

        writer.close()
        for _, client_writer, _ in (first, second):
            client_writer.close()
        await until(lambda: len(acceptor.sessions) == 0)

    @pytest.mark.asyncio
    async def test_shutdown_says_goodbye_to_every_session(self, stack, until) -> None:
        relay, acceptor = stack
        clients = [await open_client(acceptor) for _ in range(2)]
        await until(lambda: len(acceptor.sessions) == 2)

        acceptor.shutdown("maintenance")

        for reader, writer, _ in clients:
            line = await asyncio.wait_for(reader.readline(), 2.0)
            assert line == b"221 testhost closing connection (maintenance)\r\n"
            assert await asyncio.wait_for(reader.read(), 2.0) == b""

        await acceptor.wait_closed(timeout=2.0)
        assert len(acceptor.sessions) == 0

        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", acceptor.port)
