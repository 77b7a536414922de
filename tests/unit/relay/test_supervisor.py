"""Unit tests for the Supervisor restart loop."""

import asyncio
import socket
from unittest.mock import patch

import pytest

from svdrelay.core.config import create_settings
from svdrelay.relay.backoff import ReconnectPolicy
from svdrelay.relay.relay import BackendState
from svdrelay.relay.supervisor import Supervisor


def make_settings(**relay_overrides):
    relay = {"hostname": "testhost", "shutdown_timeout": 0.2, "loop_timeout": 0.05}
    relay.update(relay_overrides)
    return create_settings(
        overrides={
            "listen": {"host": "127.0.0.1", "port": 0},
            "relay": relay,
            "reconnect": {"initial_delay": 0.0, "max_delay": 0.0, "jitter": 0.0},
        }
    )


class TestSupervisor:
    """Tests for generations, faults and stopping."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, fake_backend) -> None:
        supervisor = Supervisor(make_settings(), connector=fake_backend.connect)
        task = asyncio.create_task(supervisor.run())

        await asyncio.wait_for(supervisor.wait_running(), timeout=2.0)
        assert supervisor.generation == 1
        assert supervisor.acceptor is not None and supervisor.acceptor.port != 0
        # Survives a few heartbeat timeouts
        await asyncio.sleep(0.15)
        assert not task.done()

        supervisor.request_stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert supervisor.generation == 1
        assert supervisor.relay is not None and supervisor.relay.closed

    @pytest.mark.asyncio
    async def test_eager_connect(self, fake_backend, until, banner) -> None:
        supervisor = Supervisor(
            make_settings(eager_connect=True), connector=fake_backend.connect
        )
        task = asyncio.create_task(supervisor.run())
        await asyncio.wait_for(supervisor.wait_running(), timeout=2.0)
        await until(lambda: supervisor.relay.state is BackendState.CONNECTED)
        fake_backend.conn.feed(banner)
        await until(lambda: supervisor.relay.in_flight is None)

        supervisor.request_stop()
        await asyncio.wait_for(task, timeout=2.0)
        # Quit was sent; the silent fake backend forced an abort
        assert fake_backend.conn.written == ["QUIT"]
        assert fake_backend.conn.closed

    @pytest.mark.asyncio
    async def test_fault_restarts_generation(self, fake_backend, until) -> None:
        calls = 0

        async def flaky_connector(host: str, port: int):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("unexpected")
            return await fake_backend.connect(host, port)

        supervisor = Supervisor(make_settings(eager_connect=True), connector=flaky_connector)
        task = asyncio.create_task(supervisor.run())

        await until(lambda: supervisor.generation == 2)
        await until(
            lambda: supervisor.relay is not None
            and supervisor.relay.state is BackendState.CONNECTED
        )

        supervisor.request_stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert supervisor.generation == 2

    @pytest.mark.asyncio
    async def test_bind_failure_is_a_fault(self, fake_backend, until) -> None:
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        port = blocker.getsockname()[1]
        try:
            settings = make_settings()
            settings.listen.port = port
            supervisor = Supervisor(settings, connector=fake_backend.connect)
            task = asyncio.create_task(supervisor.run())

            await until(lambda: supervisor.generation >= 3)
            assert not task.done()

            supervisor.request_stop()
            await asyncio.wait_for(task, timeout=2.0)
        finally:
            blocker.close()


class TestRestartBackoff:
    """Restart delays grow with consecutive faults and reset after stable runs."""

    async def run_faulting(self, supervisor: Supervisor, until) -> None:
        task = asyncio.create_task(supervisor.run())
        await until(lambda: supervisor.generation >= 4)
        supervisor.request_stop()
        await asyncio.wait_for(task, timeout=2.0)

    @staticmethod
    async def failing_connector(host: str, port: int):
        raise RuntimeError("unexpected")

    @pytest.mark.asyncio
    async def test_consecutive_faults_back_off(self, until) -> None:
        supervisor = Supervisor(
            make_settings(eager_connect=True), connector=self.failing_connector
        )
        with patch.object(
            ReconnectPolicy, "delay", autospec=True, return_value=0.0
        ) as delay:
            await self.run_faulting(supervisor, until)

        attempts = [c.args[1] for c in delay.call_args_list]
        assert attempts[:3] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_stable_generation_resets_backoff(self, until) -> None:
        supervisor = Supervisor(
            make_settings(eager_connect=True),
            connector=self.failing_connector,
            stable_after=0.0,
        )
        with patch.object(
            ReconnectPolicy, "delay", autospec=True, return_value=0.0
        ) as delay:
            await self.run_faulting(supervisor, until)

        attempts = [c.args[1] for c in delay.call_args_list]
        assert attempts[:3] == [0, 0, 0]
