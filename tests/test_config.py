from __future__ import annotations

import pytest
import yaml

from subconvert.config import ServiceConfig, load_config

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def no_port_env(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)


def test_missing_file_is_created_with_defaults(tmp_path) -> None:
    path = tmp_path / "service-config.yaml"

    config = load_config(path)

    assert config == ServiceConfig()
    assert yaml.safe_load(path.read_text(encoding="utf-8"))["port"] == 3000


def test_original_camel_case_keys_are_understood(tmp_path) -> None:
    path = tmp_path / "service-config.yaml"
    path.write_text(
        "scriptPath: ./custom.py\nport: 8080\nuseCache: false\nscriptTimeoutMs: 2500\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.script_path == "./custom.py"
    assert config.port == 8080
    assert config.use_cache is False
    assert config.script_timeout_ms == 2500
    assert config.cache_dir == "cache"


def test_missing_keys_fall_back_with_warning(tmp_path, caplog) -> None:
    path = tmp_path / "service-config.yaml"
    path.write_text("port: 9000\n", encoding="utf-8")

    config = load_config(path)

    assert config.port == 9000
    assert config.use_cache is True
    assert "use_cache not set" in caplog.text


def test_port_environment_variable_wins(tmp_path, monkeypatch) -> None:
    path = tmp_path / "service-config.yaml"
    path.write_text("port: 9000\n", encoding="utf-8")
    monkeypatch.setenv("PORT", "4321")

    assert load_config(path).port == 4321


def test_non_mapping_config_is_rejected(tmp_path) -> None:
    path = tmp_path / "service-config.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(path)
