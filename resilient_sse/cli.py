"""resilient-sse CLI — listen to an event stream, manage default settings."""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from pydantic import ValidationError

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

import tomli_w

from .client import HTTPOpener
from .errors import SessionError
from .listener import EventStream
from .types import ListenerConfig, ReconnectingPayload, StreamContext


# ============================================================================
# Config helpers
# ============================================================================

CONFIG_DIR = Path.home() / ".resilient_sse"
CONFIG_FILE = CONFIG_DIR / "config.toml"


def _load_config() -> Dict[str, Any]:
    """Read config.toml, returning an empty dict if it doesn't exist."""
    if not CONFIG_FILE.exists():
        return {}
    with open(CONFIG_FILE, "rb") as f:
        return tomllib.load(f)


def _save_config(cfg: Dict[str, Any]) -> None:
    """Write config dict to config.toml, creating its directory on first use."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(cfg, f)


def _set_nested(cfg: Dict[str, Any], dotted_key: str, value: str) -> None:
    """Set ``listener.max_retries``-style keys, creating tables along the way.

    Raises click.BadParameter when the key is malformed or walks through a
    plain value (``listener.max_retries.x``).
    """
    *tables, leaf = dotted_key.split(".")
    if not leaf or not all(tables):
        raise click.BadParameter(f"malformed key {dotted_key!r}", param_hint="KEY")
    d = cfg
    for i, table in enumerate(tables):
        d = d.setdefault(table, {})
        if not isinstance(d, dict):
            path = ".".join(tables[: i + 1])
            raise click.BadParameter(f"{path!r} is a value, not a table", param_hint="KEY")
    d[leaf] = value


def _listener_config(cfg: Dict[str, Any], overrides: Dict[str, Any]) -> ListenerConfig:
    """Merge the [listener] table with command-line overrides."""
    values: Dict[str, Any] = dict(cfg.get("listener", {}))
    statuses = values.get("retry_statuses")
    if isinstance(statuses, str):
        values["retry_statuses"] = [s.strip() for s in statuses.split(",") if s.strip()]
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ListenerConfig(**values)


def _parse_headers(raw: Tuple[str, ...]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for item in raw:
        name, sep, value = item.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected 'Name: value', got {item!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


# ============================================================================
# CLI group
# ============================================================================

@click.group()
def cli():
    """resilient-sse CLI"""
    pass


# ============================================================================
# resilient-sse listen <url>
# ============================================================================

@cli.command("listen")
@click.argument("url")
@click.option("--header", "-H", "headers", multiple=True,
              help="Extra request header as 'Name: value' (repeatable)")
@click.option("--last-event-id", default="", help="Resume after this event id")
@click.option("--min-interval", type=float, default=None, help="Minimum reconnect delay (s)")
@click.option("--max-interval", type=float, default=None, help="Maximum reconnect delay (s)")
@click.option("--max-retries", type=int, default=None,
              help="Retriable open failures tolerated before giving up")
@click.option("--max-bad-lines", type=int, default=None,
              help="Malformed lines tolerated per stream before reconnecting")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def listen_cmd(url: str, headers: Tuple[str, ...], last_event_id: str,
               min_interval: Optional[float], max_interval: Optional[float],
               max_retries: Optional[int], max_bad_lines: Optional[int],
               as_json: bool, verbose: bool):
    """Print events from URL until the session ends."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = _listener_config(_load_config(), {
            "min_interval": min_interval,
            "max_interval": max_interval,
            "max_retries": max_retries,
            "max_bad_lines": max_bad_lines,
        })
    except ValidationError as e:
        click.echo(f"Error: invalid listener configuration: {e}", err=True)
        sys.exit(1)

    opener = HTTPOpener(url, headers=_parse_headers(headers))
    stream = EventStream(
        opener, config, StreamContext(last_event_id=last_event_id), close_opener=True
    )

    def on_reconnecting(payload: ReconnectingPayload) -> None:
        click.echo(f"Reconnecting in {payload.delay:.1f}s (attempt {payload.attempt})", err=True)

    stream.on("reconnecting", on_reconnecting)
    stream.start()
    try:
        for event in stream:
            if as_json:
                click.echo(event.model_dump_json(by_alias=True))
            else:
                click.echo(str(event))
    except SessionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        stream.close()


# ============================================================================
# resilient-sse config (subgroup)
# ============================================================================

@cli.group()
def config():
    """Manage default settings."""
    pass


@config.command("show")
def config_show():
    """Print config file contents."""
    if not CONFIG_FILE.exists():
        click.echo(f"No config file found at {CONFIG_FILE}")
        return

    with open(CONFIG_FILE, "r") as f:
        click.echo(f.read())


@config.command("set", context_settings={"ignore_unknown_options": True})
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a config value (e.g., resilient-sse config set listener.max_retries 5)"""
    cfg = _load_config()
    _set_nested(cfg, key, value)
    if key.startswith("listener."):
        try:
            _listener_config(cfg, {})
        except ValidationError as e:
            click.echo(f"Error: invalid value for {key}: {e}", err=True)
            sys.exit(1)
    _save_config(cfg)
    click.echo(f"Set {key} = {value}")


# ============================================================================
# Entry point
# ============================================================================

def main():
    cli()


if __name__ == "__main__":
    main()
