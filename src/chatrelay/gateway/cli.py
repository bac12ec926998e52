"""Typer CLI for running and inspecting the chat relay."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Optional

import typer

from ..logging_utils import configure_logging
from .config_loader import list_env_overrides, load_gateway_config

app = typer.Typer(help="Chat relay gateway in front of a local Ollama daemon")


@app.command("serve")
def cmd_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address override"),
    port: Optional[int] = typer.Option(None, "--port", help="Listen port override"),
    log_level: str = typer.Option("INFO", "--log-level", help="Root log level"),
):
    """Run the gateway under uvicorn."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(
            f"unknown log level: {log_level}", param_hint="--log-level"
        )
    log_path = configure_logging("chat_relay", level=level)
    typer.echo(f"[chat-relay] logging to {log_path}")

    from .app import main  # imported late: builds the pool from config

    main(host=host, port=port)


@app.command("config")
def cmd_config():
    """Print the resolved runtime configuration as JSON."""
    cfg = load_gateway_config()
    out = asdict(cfg)
    out["env_overrides"] = list_env_overrides()
    typer.echo(json.dumps(out, indent=2))


if __name__ == "__main__":  # pragma: no cover
    app()
