"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import typer
import yaml

from bridgectl.api import StatusReport, inspect_status, status_to_dict
from bridgectl.core.config import ConfigManager, config_to_document
from bridgectl.core.errors import BridgectlError
from bridgectl.core.model import HealthStatus, Target

app = typer.Typer(help="Route browser native messaging to the reachable Claude backend")
config_app = typer.Typer(help="Inspect and edit the routing configuration")
app.add_typer(config_app, name="config")


def _load_manager() -> ConfigManager:
    manager = ConfigManager()
    manager.load()
    return manager


def _flatten(doc: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    items: list[tuple[str, Any]] = []
    for key, value in doc.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            items.extend(_flatten(value, f"{path}."))
        elif isinstance(value, dict):
            continue
        else:
            items.append((path, value))
    return items


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value)
    return str(value)


def _parse_value(raw: str) -> Any:
    """Interpret CLI input as YAML so `true`, `3000` and `[cli, desktop]` get their natural types."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _describe_health(status: HealthStatus) -> str:
    if not status.process_running and not status.ipc_connectable:
        detail = "process not running"
    else:
        detail = "process running" if status.process_running else "process not seen"
        if status.ipc_connectable:
            latency = f" ({status.response_time_ms}ms)" if status.response_time_ms is not None else ""
            detail += f", connectable{latency}"
        else:
            detail += ", not connectable"
    if status.error:
        detail += f" [{status.error}]"
    return detail


def _print_report(report: StatusReport) -> None:
    configured = report.config.target
    configured_name = configured.value if isinstance(configured, Target) else configured
    typer.echo(f"Config: {report.config_path}")
    typer.echo(f"Transport: {report.config.advanced.transport}")
    if report.resolution is not None:
        typer.echo(
            f"Target: {configured_name} -> {report.resolution.target.value} ({report.resolution.reason})"
        )
    else:
        typer.echo(f"Target: {configured_name} -> none ({report.error})")
    for target in Target:
        marker = "  <- active" if report.resolution and report.resolution.target is target else ""
        typer.echo(f"  {target.value}: {_describe_health(report.detection[target])}{marker}")
        channel = report.channels.get(target)
        typer.echo(f"    channel: {channel or '<not configured>'}")


@app.command("status")
def status(
    as_json: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """Show backend health and the target the bridge would route to."""
    try:
        report = asyncio.run(inspect_status())
    except BridgectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if as_json:
        typer.echo(json.dumps(status_to_dict(report), indent=2))
        return
    _print_report(report)


@config_app.command("list")
def config_list() -> None:
    """List all configuration values."""
    try:
        manager = _load_manager()
    except BridgectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    for key, value in _flatten(config_to_document(manager.get_config())):
        typer.echo(f"{key}: {_format_value(value)}")


@config_app.command("get")
def config_get(key: str) -> None:
    """Print one configuration value by dotted key, e.g. `timeouts.reconnect`."""
    try:
        manager = _load_manager()
        value = manager.get_nested(key)
    except BridgectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyError:
        typer.echo(f"Error: Key not found: {key}", err=True)
        raise typer.Exit(code=1) from None

    if isinstance(value, (dict, list)):
        typer.echo(json.dumps(value, indent=2))
    else:
        typer.echo(_format_value(value))


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Set one configuration value and save the file."""
    parsed = _parse_value(value)
    try:
        manager = _load_manager()
        manager.set_nested(key, parsed)
    except BridgectlError as exc:
        typer.echo(f"Error: Failed to set {key}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo(f"{key} set to {json.dumps(parsed)}")


@config_app.command("reset")
def config_reset() -> None:
    """Reset configuration to defaults."""
    try:
        ConfigManager().reset()
    except BridgectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo("Config reset to defaults")


@config_app.command("path")
def config_path() -> None:
    """Show the configuration file path."""
    typer.echo(str(ConfigManager().path))


def run() -> None:
    app()


if __name__ == "__main__":
    run()
