from __future__ import annotations

from pathlib import Path

import pytest

from coding_executor.config.defaults import load_default_config_dict
from coding_executor.config.loader import (
    DEFAULT_SOCKET_PATH,
    DEFAULT_WORKSPACE_ROOT,
    SidecarSettings,
    load_config,
    load_config_dicts,
)


def test_default_config_matches_builtin_budgets() -> None:
    cfg = load_config()
    assert cfg.config_version == 1
    assert cfg.executor.default_timeout_seconds == 300
    assert cfg.truncation.max_lines == 2000
    assert cfg.truncation.max_bytes == 50 * 1024
    assert (cfg.limits.ls, cfg.limits.find, cfg.limits.grep) == (500, 1000, 100)
    assert cfg.search.use_accelerators is True
    assert cfg.sidecar.default_socket_path == DEFAULT_SOCKET_PATH


def test_default_yaml_is_a_mapping() -> None:
    data = load_default_config_dict()
    assert isinstance(data, dict)
    assert "executor" in data


def test_yaml_overlays_deep_merge_in_order(tmp_path: Path) -> None:
    """overlay 按顺序深度合并：后者覆盖前者，未出现的键保留默认值。"""

    first = tmp_path / "first.yaml"
    first.write_text("truncation:\n  max_lines: 10\nlimits:\n  grep: 5\n", encoding="utf-8")
    second = tmp_path / "second.yaml"
    second.write_text("limits:\n  grep: 7\n", encoding="utf-8")

    cfg = load_config([first, second])
    assert cfg.truncation.max_lines == 10
    assert cfg.truncation.max_bytes == 50 * 1024
    assert cfg.limits.grep == 7
    assert cfg.limits.find == 1000


def test_empty_overlay_file_is_allowed(tmp_path: Path) -> None:
    p = tmp_path / "empty.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config([p]).limits.ls == 500


def test_unknown_keys_are_kept() -> None:
    cfg = load_config_dicts([{"executor": {"future_knob": 1}}])
    assert cfg.executor.model_extra == {"future_knob": 1}


def test_overlay_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "missing.yaml"])

    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config([bad])


def test_invalid_values_fail_validation() -> None:
    with pytest.raises(ValueError):
        load_config_dicts([{"truncation": {"max_lines": 0}}])


def test_sidecar_settings_defaults() -> None:
    s = SidecarSettings.from_env({})
    assert s.socket_path == DEFAULT_SOCKET_PATH
    assert s.tcp_enabled is False
    assert s.workspace_root == DEFAULT_WORKSPACE_ROOT
    assert s.auth_token is None
    assert s.require_auth is False
    assert s.config_paths == []


def test_sidecar_settings_tcp_only() -> None:
    """只配置 TCP 时不再监听默认 socket。"""

    s = SidecarSettings.from_env({"TCP_HOST": "127.0.0.1", "TCP_PORT": "8080"})
    assert s.tcp_enabled is True
    assert (s.tcp_host, s.tcp_port) == ("127.0.0.1", 8080)
    assert s.socket_path is None


def test_sidecar_settings_socket_and_tcp() -> None:
    s = SidecarSettings.from_env({"SOCKET_PATH": "/tmp/s.sock", "TCP_HOST": "0.0.0.0", "TCP_PORT": "9000"})
    assert s.socket_path == "/tmp/s.sock"
    assert s.tcp_enabled is True


@pytest.mark.parametrize("env", [{"TCP_HOST": "127.0.0.1"}, {"TCP_PORT": "8080"}, {"TCP_HOST": "h", "TCP_PORT": "abc"}])
def test_sidecar_settings_half_tcp_is_rejected(env: dict) -> None:
    with pytest.raises(ValueError) as ei:
        SidecarSettings.from_env(env)
    assert str(ei.value) == "Both TCP_HOST and TCP_PORT must be set to enable TCP"


def test_sidecar_settings_invalid_port_alone_is_ignored() -> None:
    s = SidecarSettings.from_env({"TCP_PORT": "not-a-port"})
    assert s.tcp_port is None
    assert s.socket_path == DEFAULT_SOCKET_PATH


def test_sidecar_settings_require_auth_without_token() -> None:
    with pytest.raises(ValueError) as ei:
        SidecarSettings.from_env({"SIDECAR_REQUIRE_AUTH": "true"})
    assert "SIDECAR_AUTH_TOKEN is not set" in str(ei.value)


def test_sidecar_settings_full_env() -> None:
    s = SidecarSettings.from_env(
        {
            "WORKSPACE_ROOT": "/srv/ws",
            "SIDECAR_ALLOW_OUTSIDE_WORKSPACE_ROOT": "1",
            "SIDECAR_AUTH_TOKEN": "  s3cret  ",
            "SIDECAR_REQUIRE_AUTH": "yes",
            "SIDECAR_CONFIG": "a.yaml; b.yaml,, c.yaml",
            "SIDECAR_LOG_LEVEL": "debug",
        }
    )
    assert s.workspace_root == "/srv/ws"
    assert s.allow_outside_root is True
    assert s.auth_token == "s3cret"
    assert s.require_auth is True
    assert s.config_paths == ["a.yaml", "b.yaml", "c.yaml"]
    assert s.log_level == "debug"


def test_sidecar_settings_blank_values_are_unset() -> None:
    s = SidecarSettings.from_env({"SOCKET_PATH": "  ", "WORKSPACE_ROOT": "", "SIDECAR_AUTH_TOKEN": " "})
    assert s.socket_path == DEFAULT_SOCKET_PATH
    assert s.workspace_root == DEFAULT_WORKSPACE_ROOT
    assert s.auth_token is None


def test_sidecar_settings_custom_default_socket() -> None:
    assert SidecarSettings.from_env({}, default_socket_path="/run/x.sock").socket_path == "/run/x.sock"
