"""Config-gated trace events for relay state transitions.

Each Relay and ClientSession owns a Tracer bound to its identity. Trace
calls sit explicitly at every state-changing operation and emit debug
events only when tracing is enabled (``relay.trace`` in the config).

Usage:
    from svdrelay.core.tracing import Tracer

    trace = Tracer(enabled=True, component="relay")
    trace("dispatch", backlog=3)
"""

from typing import Any

import structlog


class Tracer:
    """Emits structlog debug events when enabled."""

    def __init__(self, enabled: bool = False, **context: Any) -> None:
        self.enabled = enabled
        self._log = structlog.get_logger().bind(**context)

    def __call__(self, event: str, **kw: Any) -> None:
        if self.enabled:
            self._log.debug(event, trace=True, **kw)
