"""svdrelay Exception Hierarchy.

All custom exceptions inherit from RelayError, enabling consistent
error handling and structured logging across the relay.

Exception Categories:
- Rejected input → InvalidCommandError, RelayClosedError (raised to caller)
- Transient backend faults → BackendUnavailableError (retried, never
  surfaced to clients)
- Stale delivery targets → StaleHandleError (caught and dropped by the relay)
- Startup faults → ConfigurationError

Usage:
    from svdrelay.core.exceptions import InvalidCommandError

    raise InvalidCommandError(text="   ")
"""

from typing import Any, Optional


class RelayError(Exception):
    """Base exception for all svdrelay errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: Optional[str] = None) -> None:
        """Initialize RelayError.

        Args:
            message: Optional custom message. Defaults to a generic message.
        """
        self.message = message or "A relay error occurred."
        super().__init__(self.message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context dictionary for structured logging.

        Returns:
            dict: Key-value pairs of exception context.
        """
        return {}

    def __repr__(self) -> str:
        """Return debug representation."""
        return f"{self.__class__.__name__}({self.message!r})"


class InvalidCommandError(RelayError):
    """Submitted command is empty or whitespace-only.

    The command is rejected and never queued.

    Attributes:
        text: The rejected command text.
    """

    def __init__(self, text: str = "", message: Optional[str] = None) -> None:
        self.text = text
        if message is None:
            message = "Command must not be empty."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for the rejected command."""
        return {"text": self.text}

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"InvalidCommandError(text={self.text!r})"


class RelayClosedError(RelayError):
    """Command submitted after the relay was shut down.

    Attributes:
        reason: The shutdown reason, if known.
    """

    def __init__(
        self,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.reason = reason
        if message is None:
            message = "Relay is shutting down."
            if reason:
                message = f"Relay is shutting down ({reason})."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for the closed relay."""
        return {"reason": self.reason}


class BackendUnavailableError(RelayError):
    """Backend connection attempt failed.

    Transient: the relay retries with backoff and never reports this
    error to clients.

    Attributes:
        host: Backend host.
        port: Backend port.
        reason: Underlying failure description.
    """

    def __init__(
        self,
        host: str,
        port: int,
        reason: str,
        message: Optional[str] = None,
    ) -> None:
        """Initialize BackendUnavailableError.

        Args:
            host: Backend host that refused the connection.
            port: Backend port.
            reason: Description of the underlying OS or timeout error.
            message: Optional custom message.
        """
        self.host = host
        self.port = port
        self.reason = reason
        if message is None:
            message = f"Backend {host}:{port} unavailable: {reason}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for the failed connection attempt."""
        return {"host": self.host, "port": self.port, "reason": self.reason}

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"BackendUnavailableError(host={self.host!r}, "
            f"port={self.port!r}, reason={self.reason!r})"
        )


class StaleHandleError(RelayError):
    """Delivery target has already disconnected.

    Raised by a client handle on delivery after close. The relay drops
    it silently; it is never visible to callers of the relay.

    Attributes:
        session_id: Identifier of the stale session.
    """

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        self.session_id = session_id
        if message is None:
            message = f"Session '{session_id}' is no longer connected."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for the stale handle."""
        return {"session_id": self.session_id}


class ConfigurationError(RelayError):
    """Configuration file or value is invalid.

    Attributes:
        config_path: Path to the configuration file.
        key: The configuration key that caused the error.
    """

    def __init__(
        self,
        config_path: str,
        key: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        """Initialize ConfigurationError.

        Args:
            config_path: Path to the config file.
            key: Optional key that failed validation.
            message: Optional custom message.
        """
        self.config_path = config_path
        self.key = key
        if message is None:
            message = f"Invalid configuration in {config_path}"
            if key:
                message += f" (key: {key})"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for configuration error."""
        return {"config_path": self.config_path, "key": self.key}

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"ConfigurationError(config_path={self.config_path!r}, "
            f"key={self.key!r})"
        )
