import json
from argparse import Namespace
from typing import Any

import httpx
import pytest
import yaml

from hue_bridge_sync.cli import (
    CliError,
    ClientConfig,
    _build_client,
    _cmd_devices_effect,
    _cmd_devices_rename,
    _cmd_devices_set,
    _cmd_devices_show,
    _cmd_scenes_invoke,
    _parse_value,
    main,
)


def _config(output: str = "json") -> ClientConfig:
    return ClientConfig(server_url="http://test", api_key=None, api_bearer_token=None, output=output)


def _client_with_capture(captured: dict, status: int = 200, response_json: Any = None) -> httpx.Client:
    def _handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content.decode()) if request.content else None
        body = response_json if response_json is not None else {"ok": True, "value": None, "message": ""}
        return httpx.Response(status, json=body)

    transport = httpx.MockTransport(_handler)
    return httpx.Client(transport=transport, base_url="http://test")


def test_devices_set_sends_parsed_value(capsys) -> None:
    captured: dict = {}
    args = Namespace(device_id="dev-lamp", channel="color", value='{"hex": "#ff0000"}')

    with _client_with_capture(captured) as client:
        _cmd_devices_set(_config(), client, args)

    assert captured["method"] == "PUT"
    assert captured["url"] == "http://test/devices/dev-lamp/channels/color"
    assert captured["json"] == {"value": {"hex": "#ff0000"}}
    assert json.loads(capsys.readouterr().out)["ok"] is True


def test_parse_value_keeps_plain_strings() -> None:
    assert _parse_value("42") == 42
    assert _parse_value("true") is True
    assert _parse_value("#00ff00") == "#00ff00"
    assert _parse_value("warm") == "warm"


def test_scenes_invoke_payload_only_carries_given_options() -> None:
    captured: dict = {}
    args = Namespace(scene_id="scene-1", action="dynamic", group_id=None, duration_ms=500)

    with _client_with_capture(captured) as client:
        _cmd_scenes_invoke(_config(), client, args)

    assert captured["url"] == "http://test/scenes/scene-1/invoke"
    assert captured["json"] == {"action": "dynamic", "duration_ms": 500}


def test_scenes_invoke_rejects_negative_duration() -> None:
    captured: dict = {}
    args = Namespace(scene_id="scene-1", action=None, group_id=None, duration_ms=-5)

    with _client_with_capture(captured) as client:
        with pytest.raises(CliError):
            _cmd_scenes_invoke(_config(), client, args)

    assert captured == {}


def test_rename_strips_and_requires_name() -> None:
    captured: dict = {}

    with _client_with_capture(captured) as client:
        _cmd_devices_rename(_config(), client, Namespace(device_id="dev-lamp", name="  Reading Lamp "))
        assert captured["json"] == {"name": "Reading Lamp"}
        with pytest.raises(CliError):
            _cmd_devices_rename(_config(), client, Namespace(device_id="dev-lamp", name="   "))


def test_effect_payload_and_error_detail() -> None:
    captured: dict = {}
    args = Namespace(device_id="dev-lamp", effect="sunrise", duration_ms=60000)

    with _client_with_capture(captured, status=400, response_json={"detail": "unsupported effect"}) as client:
        with pytest.raises(CliError) as excinfo:
            _cmd_devices_effect(_config(), client, args)

    assert captured["json"] == {"effect": "sunrise", "duration_ms": 60000}
    assert "unsupported effect" in str(excinfo.value)
    assert "400" in str(excinfo.value)


def test_show_device_as_yaml(capsys) -> None:
    captured: dict = {}
    device = {"id": "dev-lamp", "name": "Desk Lamp", "channels": [{"id": "on", "value": True}]}

    with _client_with_capture(captured, response_json=device) as client:
        _cmd_devices_show(_config("yaml"), client, Namespace(device_id="dev-lamp"))

    assert yaml.safe_load(capsys.readouterr().out) == device


def test_show_device_as_table_lists_channels(capsys) -> None:
    captured: dict = {}
    device = {"id": "dev-lamp", "channels": [{"id": "bri", "name": "Brightness", "kind": "level", "value": 42.0}]}

    with _client_with_capture(captured, response_json=device) as client:
        _cmd_devices_show(_config("table"), client, Namespace(device_id="dev-lamp"))

    out = capsys.readouterr().out
    assert "Brightness" in out
    assert "42.0" in out


def test_build_client_sets_auth_headers() -> None:
    config = ClientConfig(server_url="http://test", api_key="k", api_bearer_token="t", output="json")

    with _build_client(config) as client:
        assert client.headers["X-API-Key"] == "k"
        assert client.headers["Authorization"] == "Bearer t"


def test_main_rejects_non_positive_timeout(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--timeout", "0", "devices", "list"])

    assert excinfo.value.code == 1
    assert "Timeout must be positive" in capsys.readouterr().err


def test_main_without_command_prints_help(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 1
    assert "usage" in capsys.readouterr().out
