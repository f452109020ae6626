import json
import logging

import pytest

from hue_bridge_sync.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
    load_config,
)
from hue_bridge_sync.logging import JsonFormatter, redact_mapping


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.bridge_base_url == "https://"
    assert config.verify_tls is False


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("snapshot_retries", 0, "snapshot_retries"),
        ("metadata_max_concurrent", 0, "metadata_max_concurrent"),
        ("multi_press_window", 0.0, "multi_press_window"),
        ("sync_backoff_factor", 0.5, "sync_backoff_factor"),
        ("bridge_port", 70000, "bridge_port"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_invalid_log_settings_rejected() -> None:
    with pytest.raises(ValueError, match="log_format"):
        Config(log_format="xml")
    with pytest.raises(ValueError, match="stream_log_level"):
        Config(stream_log_level="chatty")


def test_bridge_base_url_includes_non_default_port() -> None:
    assert Config(bridge_host="10.0.0.2").bridge_base_url == "https://10.0.0.2"
    assert Config(bridge_host="10.0.0.2", bridge_port=8443).bridge_base_url == "https://10.0.0.2:8443"


def test_logging_dict_masks_secrets() -> None:
    config = Config(application_key="hue-key", api_key="secret-key", api_bearer_token="token")
    logged = config.logging_dict()
    assert logged["application_key"] == "***REDACTED***"
    assert logged["api_key"] == "***REDACTED***"
    assert logged["api_bearer_token"] == "***REDACTED***"
    assert "hue-key" not in json.dumps(logged, default=str)


def test_sources_layer_file_env_then_cli(tmp_path, monkeypatch) -> None:
    config_file = tmp_path / "sync.toml"
    config_file.write_text(
        'bridge_host = "from-file"\npoll-interval = 30\napi_port = 9000\nlog_format = "JSON"\n'
    )
    monkeypatch.setenv("HUE_SYNC_BRIDGE_HOST", "from-env")
    monkeypatch.setenv("HUE_SYNC_API_ENABLED", "false")
    monkeypatch.setenv("HUE_SYNC_SNAPSHOT_RETRIES", "5")

    config = load_config(["--config", str(config_file), "--api-port", "9100", "--verify-tls"])

    assert config.bridge_host == "from-env"
    assert config.poll_interval == 30.0
    assert config.api_port == 9100
    assert config.log_format == "json"
    assert config.api_enabled is False
    assert config.snapshot_retries == 5
    assert config.verify_tls is True


def test_missing_config_file_is_an_error(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(["--config", str(tmp_path / "absent.toml")])


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord("hue.sync", logging.INFO, __file__, 1, "Cycle %s", ("done",), None)
    record.resource_type = "light"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Cycle done"
    assert payload["logger"] == "hue.sync"
    assert payload["level"] == "INFO"
    assert payload["resource_type"] == "light"


def test_redact_mapping_hides_credentials() -> None:
    headers = {"hue-application-key": "k", "Authorization": "Bearer t", "Accept": "application/json"}

    redacted = redact_mapping(headers, extra_keys=["accept"])

    assert set(redacted.values()) == {"***REDACTED***"}
    assert redact_mapping({"Host": "bridge"}) == {"Host": "bridge"}
