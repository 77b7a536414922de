"""Core module for svdrelay.

Exports the core components: exceptions, configuration and tracing.
"""

from svdrelay.core.exceptions import (
    RelayError,
    InvalidCommandError,
    RelayClosedError,
    BackendUnavailableError,
    StaleHandleError,
    ConfigurationError,
)
from svdrelay.core.config import (
    create_settings,
    Settings,
    BackendConfig,
    ListenConfig,
    RelayConfig,
    ReconnectConfig,
    LoggingConfig,
)
from svdrelay.core.tracing import Tracer

__all__ = [
    # Exceptions
    "RelayError",
    "InvalidCommandError",
    "RelayClosedError",
    "BackendUnavailableError",
    "StaleHandleError",
    "ConfigurationError",
    # Configuration
    "create_settings",
    "Settings",
    "BackendConfig",
    "ListenConfig",
    "RelayConfig",
    "ReconnectConfig",
    "LoggingConfig",
    # Tracing
    "Tracer",
]
