"""svdrelay CLI Entry Point.

This module provides the command-line interface for running the relay
and inspecting its configuration.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import structlog
import typer
import yaml

from svdrelay import __version__
from svdrelay.core.config import LoggingConfig, Settings, create_settings
from svdrelay.core.exceptions import ConfigurationError


log = structlog.get_logger()

app = typer.Typer(
    name="svdrelay",
    help="svdrelay - share one SVDRP backend between many clients",
    no_args_is_help=True,
)


def configure_logging(cfg: LoggingConfig) -> None:
    """Configure structlog rendering and level filtering from settings."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if cfg.format == "json":
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(cfg.level)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def parse_address(address: str) -> Tuple[str, int]:
    """Parse a HOST:PORT address.

    Raises:
        ValueError: If the address is malformed.
    """
    if ":" not in address:
        raise ValueError(f"Invalid address '{address}'. Expected HOST:PORT")

    host, port_str = address.rsplit(":", 1)
    host = host.strip().strip("[]")
    try:
        port = int(port_str.strip())
    except ValueError:
        raise ValueError(f"Invalid port in '{address}'") from None
    if not host or not 0 <= port <= 65535:
        raise ValueError(f"Invalid address '{address}'. Expected HOST:PORT")
    return host, port


def load_settings(
    config: Optional[Path] = None,
    backend: Optional[str] = None,
    listen: Optional[str] = None,
    trace: bool = False,
    log_level: Optional[str] = None,
) -> Settings:
    """Build settings from a config file plus command-line overrides.

    Raises:
        typer.Exit: If the configuration or an address is invalid.
    """
    if config is not None and not config.exists():
        typer.echo(f"Error: Config file '{config}' not found", err=True)
        raise typer.Exit(code=1)

    overrides: Dict[str, Any] = {}
    try:
        if backend:
            host, port = parse_address(backend)
            overrides["backend"] = {"host": host, "port": port}
        if listen:
            host, port = parse_address(listen)
            overrides["listen"] = {"host": host, "port": port}
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if trace:
        overrides["relay"] = {"trace": True}
    if log_level:
        overrides["logging"] = {"level": log_level}

    try:
        return create_settings(config_path=config, overrides=overrides)
    except ConfigurationError as e:
        typer.echo(f"Error loading config: {e}", err=True)
        raise typer.Exit(code=1)


ConfigOption = typer.Option(
    None, "--config", "-c", help="Path to YAML configuration file"
)


@app.command("serve")
def serve(
    config: Optional[Path] = ConfigOption,
    backend: Optional[str] = typer.Option(
        None, "--backend", "-b", help="Backend address HOST:PORT"
    ),
    listen: Optional[str] = typer.Option(
        None, "--listen", "-l", help="Listen address HOST:PORT"
    ),
    trace: bool = typer.Option(
        False, "--trace", help="Trace every relay and session transition"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL"
    ),
) -> None:
    """Run the relay until interrupted."""
    settings = load_settings(config, backend, listen, trace, log_level)
    if settings.relay.trace and settings.logging.level != "DEBUG":
        settings.logging.level = "DEBUG"
    configure_logging(settings.logging)

    log.info(
        "relay_starting",
        version=__version__,
        backend=f"{settings.backend.host}:{settings.backend.port}",
        listen=f"{settings.listen.host}:{settings.listen.port}",
        ordering=settings.relay.ordering,
    )

    from svdrelay.relay.supervisor import run_relay

    asyncio.run(run_relay(settings))


@app.command("config")
def show_config(config: Optional[Path] = ConfigOption) -> None:
    """Print the effective configuration as YAML."""
    settings = load_settings(config)
    typer.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False))


@app.command("version")
def version() -> None:
    """Print the svdrelay version."""
    typer.echo(f"svdrelay {__version__}")


if __name__ == "__main__":
    app()
