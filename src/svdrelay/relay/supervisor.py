"""Relay supervisor: composition root and restart loop.

Builds one Relay and one ClientAcceptor per generation and wires them
together explicitly. A generation runs until a stop is requested or a
fault is reported (an unexpected exception in any relay or session task,
or failure to start listening). On a fault the generation is shut down in
order (acceptor, then relay) and a fresh one is started after a backoff
delay.

Usage:
    from svdrelay.relay.supervisor import run_relay

    await run_relay(settings)
"""

import asyncio
import signal
from typing import Optional, Tuple

import structlog

from svdrelay.core.config import Settings
from svdrelay.relay.acceptor import ClientAcceptor
from svdrelay.relay.backlog import BacklogOrdering
from svdrelay.relay.backoff import ReconnectPolicy
from svdrelay.relay.relay import Connector, Relay


log = structlog.get_logger()

# A generation running at least this long (seconds) resets the restart backoff
STABLE_RUN_TIME = 60.0


class Supervisor:
    """Runs relay generations until stopped.

    Attributes:
        generation: Number of generations started so far.
        relay: Relay of the current generation.
        acceptor: ClientAcceptor of the current generation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        connector: Optional[Connector] = None,
        stable_after: float = STABLE_RUN_TIME,
    ) -> None:
        """Initialize Supervisor.

        Args:
            settings: Validated settings.
            connector: Optional backend connector override (for tests).
            stable_after: Uptime after which a generation counts as
                stable and the next restart waits only the initial delay.
        """
        self._settings = settings
        self._connector = connector
        self._stable_after = stable_after
        self._policy = ReconnectPolicy(**settings.reconnect.model_dump())
        self._stop = asyncio.Event()
        self._running = asyncio.Event()

        self.generation = 0
        self.relay: Optional[Relay] = None
        self.acceptor: Optional[ClientAcceptor] = None

    def request_stop(self) -> None:
        """Ask the supervisor to shut down and return from run()."""
        log.info("supervisor_stop_requested")
        self._stop.set()

    async def wait_running(self) -> None:
        """Wait until the current generation accepts clients."""
        await self._running.wait()

    def _build(self, fault: asyncio.Future) -> Tuple[Relay, ClientAcceptor]:
        def on_fault(exc: BaseException) -> None:
            if not fault.done():
                fault.set_result(exc)

        settings = self._settings
        relay = Relay(
            settings.backend.host,
            settings.backend.port,
            ordering=BacklogOrdering(settings.relay.ordering),
            policy=self._policy,
            connector=self._connector,
            connect_timeout=settings.backend.connect_timeout,
            encoding=settings.backend.encoding,
            trace=settings.relay.trace,
            max_replays=settings.relay.max_replays,
            on_fault=on_fault,
        )
        acceptor = ClientAcceptor(
            relay,
            settings.listen.host,
            settings.listen.port,
            hostname=settings.relay.resolved_hostname(),
            service_name=settings.relay.service_name,
            max_clients=settings.listen.max_clients,
            max_output_buffer=settings.listen.max_output_buffer,
            encoding=settings.backend.encoding,
            trace=settings.relay.trace,
            on_fault=on_fault,
        )
        return relay, acceptor

    async def run(self) -> None:
        """Run generations until request_stop() is called."""
        loop = asyncio.get_running_loop()
        restarts = 0

        while not self._stop.is_set():
            self.generation += 1
            fault: asyncio.Future = loop.create_future()
            relay, acceptor = self._build(fault)
            self.relay, self.acceptor = relay, acceptor
            started = loop.time()

            faulted: Optional[BaseException]
            try:
                await acceptor.start()
                if self._settings.relay.eager_connect:
                    relay.ensure_connected()
                log.info("relay_generation_started", generation=self.generation)
                self._running.set()
                faulted = await self._wait(relay, acceptor, fault)
            except Exception as e:
                log.exception(
                    "relay_loop_fault",
                    generation=self.generation,
                    error=str(e),
                )
                faulted = e

            self._running.clear()
            uptime = loop.time() - started
            reason = "relay stopping" if faulted is None else "relay restarting"
            await self._shutdown(relay, acceptor, reason)

            if faulted is None:
                break

            if uptime >= self._stable_after:
                restarts = 0
            delay = self._policy.delay(restarts)
            restarts += 1
            log.warning(
                "relay_restarting",
                generation=self.generation,
                delay=round(delay, 3),
                error=str(faulted),
            )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        log.info("supervisor_stopped", generations=self.generation)

    async def _wait(
        self,
        relay: Relay,
        acceptor: ClientAcceptor,
        fault: asyncio.Future,
    ) -> Optional[BaseException]:
        """Wait for a stop request or a fault. Returns the fault, if any."""
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {stop_task, fault},
                    timeout=self._settings.relay.loop_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if fault in done:
                    return fault.result()
                if stop_task in done:
                    return None
                log.debug(
                    "relay_heartbeat",
                    generation=self.generation,
                    backend_state=str(relay.state),
                    backlog=relay.backlog_size,
                    clients=len(acceptor.sessions),
                    dispatched=relay.commands_dispatched,
                )
        finally:
            stop_task.cancel()

    async def _shutdown(
        self,
        relay: Relay,
        acceptor: ClientAcceptor,
        reason: str,
    ) -> None:
        """Orderly shutdown: clients first, then the backend."""
        timeout = self._settings.relay.shutdown_timeout
        acceptor.shutdown(reason)
        relay.shutdown(reason)
        try:
            await asyncio.wait_for(relay.wait_closed(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("relay_shutdown_timeout", timeout=timeout)
            relay.abort()
        await acceptor.wait_closed(timeout=timeout)
        log.info("relay_generation_stopped", generation=self.generation, reason=reason)


async def run_relay(settings: Settings) -> None:
    """Run the relay until SIGINT/SIGTERM.

    Args:
        settings: Validated settings.
    """
    loop = asyncio.get_running_loop()
    supervisor = Supervisor(settings)

    def shutdown_handler(signum: int) -> None:
        sig_name = signal.Signals(signum).name
        log.info("shutdown_signal_received", signal=sig_name)
        supervisor.request_stop()

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler, sig)
            installed.append(sig)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await supervisor.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
