"""Command-line client for the Hue sync HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, MutableMapping, Optional, Sequence

import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table


DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
ENV_PREFIX = "HUE_SYNC_CLI_"

DEVICE_COLUMNS = ("id", "name", "device_class", "model", "battery")
CHANNEL_COLUMNS = ("id", "name", "kind", "value", "writable")
ROOM_COLUMNS = ("id", "name", "members")
SCENE_COLUMNS = ("id", "name", "state", "scope_type", "scope_id")


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    api_key: Optional[str]
    api_bearer_token: Optional[str]
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "CLI for the Hue sync API. Uses HUE_SYNC_CLI_* env vars for defaults "
            "and prints JSON (default), YAML or a table. Examples: "
            "`hue-sync-cli devices list`, `hue-sync-cli devices set <id> bri 40`."
        )
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the sync API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=(
            f"API key for authentication (env: {ENV_PREFIX}API_KEY). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--api-bearer-token",
        default=_env("API_BEARER_TOKEN"),
        help=(
            f"Bearer token for authentication (env: {ENV_PREFIX}API_BEARER_TOKEN). "
            "Overrides Authorization header when set."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml", "table"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(_env("TIMEOUT", "10") or 10),
        help="Request timeout in seconds. Renames wait for bridge confirmation, so allow a few seconds.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_device_commands(subparsers)
    _add_topology_commands(subparsers)
    _add_scene_commands(subparsers)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    health = subparsers.add_parser(
        "health",
        help="Show subsystem health (GET /health)",
        description="Prints the health of the snapshot, stream and API subsystems.",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show sync status (GET /status)",
        description="Prints model counts, stream state and cycle statistics.",
    )
    status.set_defaults(func=_cmd_status)

    resync = subparsers.add_parser(
        "resync",
        help="Request a snapshot resync (POST /resync)",
        description="Schedules a debounced full snapshot; ignored while one is already running.",
    )
    resync.set_defaults(func=_cmd_resync)

    discovery = subparsers.add_parser(
        "discovery",
        help="Start a bridge device search (POST /discovery)",
    )
    discovery.set_defaults(func=_cmd_discovery)


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser(
        "devices",
        help="Device commands (list/show/set/rename/effect)",
        description="Inspect synced devices and write to their channels.",
    )
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    list_cmd = device_sub.add_parser("list", help="List devices (GET /devices)")
    list_cmd.set_defaults(func=_cmd_devices_list)

    show_cmd = device_sub.add_parser("show", help="Show one device and its channels")
    show_cmd.add_argument("device_id", help="Device identifier")
    show_cmd.set_defaults(func=_cmd_devices_show)

    set_cmd = device_sub.add_parser(
        "set",
        help="Write a channel value (PUT /devices/{id}/channels/{channel})",
        description=(
            "VALUE is parsed as JSON when possible, so `true`, `42` and "
            "'{\"r\": 255, \"g\": 0, \"b\": 0}' work; anything else is sent as a string."
        ),
    )
    set_cmd.add_argument("device_id", help="Device identifier")
    set_cmd.add_argument("channel", help="Channel id, e.g. on, bri, ct, ctPreset, color")
    set_cmd.add_argument("value", help="Value to write")
    set_cmd.set_defaults(func=_cmd_devices_set)

    rename_cmd = device_sub.add_parser("rename", help="Rename a device and wait for confirmation")
    rename_cmd.add_argument("device_id", help="Device identifier")
    rename_cmd.add_argument("name", help="New name (1-32 characters)")
    rename_cmd.set_defaults(func=_cmd_devices_rename)

    effect_cmd = device_sub.add_parser(
        "effect",
        help="Start or stop a light effect",
        description="Use `none` as the effect to stop whatever is running.",
    )
    effect_cmd.add_argument("device_id", help="Device identifier")
    effect_cmd.add_argument("effect", help="Effect id or label, or `none`")
    effect_cmd.add_argument("--duration-ms", type=int, help="Duration for timed effects such as sunrise")
    effect_cmd.set_defaults(func=_cmd_devices_effect)


def _add_topology_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    rooms = subparsers.add_parser("rooms", help="List rooms (GET /rooms)")
    rooms.set_defaults(func=_cmd_rooms)
    groups = subparsers.add_parser("groups", help="List zones (GET /groups)")
    groups.set_defaults(func=_cmd_groups)


def _add_scene_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    scenes = subparsers.add_parser("scenes", help="Scene commands (list/invoke)")
    scene_sub = scenes.add_subparsers(dest="scene_command", required=True)

    list_cmd = scene_sub.add_parser("list", help="List scenes (GET /scenes)")
    list_cmd.set_defaults(func=_cmd_scenes_list)

    invoke_cmd = scene_sub.add_parser(
        "invoke",
        help="Recall a scene (POST /scenes/{id}/invoke)",
        description="Actions: activate (default), static, deactivate, dynamic.",
    )
    invoke_cmd.add_argument("scene_id", help="Scene identifier")
    invoke_cmd.add_argument("--action", help="Recall action")
    invoke_cmd.add_argument("--group-id", help="Room or zone to apply the scene to")
    invoke_cmd.add_argument("--duration-ms", type=int, help="Transition duration in milliseconds")
    invoke_cmd.set_defaults(func=_cmd_scenes_invoke)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml", "table"}:
        raise CliError("Output format must be 'json', 'yaml' or 'table'")
    if args.timeout <= 0:
        raise CliError("Timeout must be positive")

    return ClientConfig(
        server_url=args.server_url,
        api_key=args.api_key,
        api_bearer_token=args.api_bearer_token,
        output=output,
        timeout=args.timeout,
    )


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
        headers.setdefault("Authorization", f"ApiKey {config.api_key}")
    if config.api_bearer_token:
        headers["Authorization"] = f"Bearer {config.api_bearer_token}"

    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _print_table(data: Any, columns: Optional[Sequence[str]]) -> None:
    console = Console(file=sys.stdout)
    rows = data if isinstance(data, list) else [data]
    if not rows:
        console.print("(none)")
        return
    if not columns:
        columns = [key for key in rows[0].keys() if not isinstance(rows[0][key], (dict, list))]
    table = Table(show_header=True, header_style="bold cyan", box=box.ROUNDED)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(_cell(row.get(column)) for column in columns))
    console.print(table)


def _print_output(data: Any, output: str, columns: Optional[Sequence[str]] = None) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    elif output == "table" and isinstance(data, (list, dict)):
        _print_table(data, columns)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:  # pragma: no cover - CLI feedback path
        detail = None
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _parse_value(value: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/health"))
    if config.output == "table":
        rows = [{"subsystem": name, **state} for name, state in data.get("subsystems", {}).items()]
        _print_output(rows, config.output, ("subsystem", "status", "failures", "last_error"))
        return
    _print_output(data, config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/status"))
    _print_output(data, config.output)


def _cmd_resync(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post("/resync"))
    _print_output(data, config.output)


def _cmd_discovery(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post("/discovery"))
    _print_output(data, config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/devices"))
    _print_output(data, config.output, DEVICE_COLUMNS)


def _cmd_devices_show(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/devices/{args.device_id}"))
    if config.output == "table":
        _print_output(data.get("channels", []), config.output, CHANNEL_COLUMNS)
        return
    _print_output(data, config.output)


def _cmd_devices_set(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = {"value": _parse_value(args.value)}
    data = _handle_response(
        client.put(f"/devices/{args.device_id}/channels/{args.channel}", json=payload)
    )
    _print_output(data, config.output)


def _cmd_devices_rename(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    name = args.name.strip()
    if not name:
        raise CliError("Name must not be empty.")
    data = _handle_response(client.put(f"/devices/{args.device_id}/name", json={"name": name}))
    _print_output(data, config.output)


def _cmd_devices_effect(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if args.duration_ms is not None and args.duration_ms < 0:
        raise CliError("Duration must not be negative.")
    payload: MutableMapping[str, Any] = {"effect": args.effect}
    if args.duration_ms is not None:
        payload["duration_ms"] = args.duration_ms
    data = _handle_response(client.post(f"/devices/{args.device_id}/effects", json=payload))
    _print_output(data, config.output)


def _cmd_rooms(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/rooms"))
    _print_output(data, config.output, ROOM_COLUMNS)


def _cmd_groups(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/groups"))
    _print_output(data, config.output, ROOM_COLUMNS)


def _cmd_scenes_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/scenes"))
    _print_output(data, config.output, SCENE_COLUMNS)


def _cmd_scenes_invoke(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload: MutableMapping[str, Any] = {}
    if args.action:
        payload["action"] = args.action
    if args.group_id:
        payload["group_id"] = args.group_id
    if args.duration_ms is not None:
        if args.duration_ms < 0:
            raise CliError("Duration must not be negative.")
        payload["duration_ms"] = args.duration_ms
    data = _handle_response(client.post(f"/scenes/{args.scene_id}/invoke", json=payload))
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)

        if not args.command:
            parser.print_help()
            sys.exit(1)

        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
