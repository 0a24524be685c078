"""
配置加载器（YAML overlays + 环境变量）。

设计目标：
- 内置默认配置 + 多个 YAML overlay，按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；未知字段允许保留（避免新增字段导致旧版本加载失败）；
- sidecar 的部署参数（监听地址、workspace、鉴权）来自环境变量，见 `SidecarSettings.from_env`。
"""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from coding_executor.config.defaults import load_default_config_dict

DEFAULT_SOCKET_PATH = "/var/run/sidecar/sidecar.sock"
DEFAULT_WORKSPACE_ROOT = "/workspace"


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ExecutorSection(BaseModel):
    """命令执行参数。"""

    model_config = ConfigDict(extra="allow")

    shell: str = "/bin/bash"
    default_timeout_seconds: float = 300
    terminate_grace_ms: int = Field(default=200, ge=0)
    max_capture_bytes: int = Field(default=1024 * 1024, ge=0)


class TruncationSection(BaseModel):
    """输出截断预算（read/ls/find/bash；grep 只使用 max_bytes）。"""

    model_config = ConfigDict(extra="allow")

    max_lines: int = Field(default=2000, ge=1)
    max_bytes: int = Field(default=50 * 1024, ge=1)


class LimitsSection(BaseModel):
    """各操作的默认条数上限（调用方未指定 limit 时使用）。"""

    model_config = ConfigDict(extra="allow")

    ls: int = Field(default=500, ge=1)
    find: int = Field(default=1000, ge=1)
    grep: int = Field(default=100, ge=1)


class SearchSection(BaseModel):
    """accelerator（rg/fd）使用策略。"""

    model_config = ConfigDict(extra="allow")

    use_accelerators: bool = True
    probe_timeout_sec: float = Field(default=5.0, gt=0)


class SidecarSection(BaseModel):
    """sidecar 服务参数（部署相关的监听/鉴权参数走环境变量）。"""

    model_config = ConfigDict(extra="allow")

    default_socket_path: str = DEFAULT_SOCKET_PATH
    stream_poll_interval_sec: float = Field(default=0.2, gt=0)
    log_level: str = "INFO"


class CodingExecutorConfig(BaseModel):
    """完整配置（默认值 + overlays 合并后的结果）。"""

    model_config = ConfigDict(extra="allow")

    config_version: int = 1
    executor: ExecutorSection = Field(default_factory=ExecutorSection)
    truncation: TruncationSection = Field(default_factory=TruncationSection)
    limits: LimitsSection = Field(default_factory=LimitsSection)
    search: SearchSection = Field(default_factory=SearchSection)
    sidecar: SidecarSection = Field(default_factory=SidecarSection)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取单个 YAML overlay（根节点必须为 mapping）。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config file root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: Sequence[Mapping[str, Any]], *, include_defaults: bool = True) -> CodingExecutorConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `CodingExecutorConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置默认配置作为第一层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return CodingExecutorConfig.model_validate(merged)


def load_config(config_paths: Sequence[Union[str, Path]] = ()) -> CodingExecutorConfig:
    """加载内置默认配置与 YAML overlays（按顺序）。"""

    overlays = [_load_yaml_file(Path(p)) for p in config_paths]
    return load_config_dicts(overlays)


def _env_str(environ: Mapping[str, str], key: str) -> Optional[str]:
    """读取 env；空串或仅空白视为未设置。"""

    raw = environ.get(key)
    if raw is None:
        return None
    s = raw.strip()
    return s or None


def _env_bool(environ: Mapping[str, str], key: str) -> bool:
    value = _env_str(environ, key)
    return value is not None and value.lower() in ("1", "true", "yes")


def _env_port(environ: Mapping[str, str], key: str) -> Optional[int]:
    """解析端口；非数字或 <= 0 视为未设置。"""

    value = _env_str(environ, key)
    if value is None:
        return None
    try:
        port = int(float(value))
    except ValueError:
        return None
    return port if port > 0 else None


def _split_paths(raw: Optional[str]) -> List[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白与空项，保序）。"""

    if not raw:
        return []
    parts: List[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


@dataclass(frozen=True)
class SidecarSettings:
    """
    sidecar 部署参数（来自环境变量）。

    环境变量：
    - `SOCKET_PATH` / `TCP_HOST` + `TCP_PORT`：监听地址（都未设置时使用默认 socket）
    - `WORKSPACE_ROOT`（默认 `/workspace`）、`SIDECAR_ALLOW_OUTSIDE_WORKSPACE_ROOT`
    - `SIDECAR_AUTH_TOKEN`、`SIDECAR_REQUIRE_AUTH`
    - `SIDECAR_CONFIG`：逗号/分号分隔的 YAML overlay 路径
    - `SIDECAR_LOG_LEVEL`：覆盖配置中的日志级别
    """

    socket_path: Optional[str] = None
    tcp_host: Optional[str] = None
    tcp_port: Optional[int] = None
    workspace_root: str = DEFAULT_WORKSPACE_ROOT
    allow_outside_root: bool = False
    auth_token: Optional[str] = None
    require_auth: bool = False
    config_paths: List[str] = field(default_factory=list)
    log_level: Optional[str] = None

    @property
    def tcp_enabled(self) -> bool:
        return self.tcp_host is not None and self.tcp_port is not None

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        default_socket_path: str = DEFAULT_SOCKET_PATH,
    ) -> "SidecarSettings":
        """
        从环境变量构建设置并校验组合约束。

        异常：
        - ValueError：TCP_HOST/TCP_PORT 只设置了一个；或要求鉴权但未配置 token
        """

        env = os.environ if environ is None else environ
        tcp_host = _env_str(env, "TCP_HOST")
        tcp_port = _env_port(env, "TCP_PORT")
        if (tcp_host is None) != (tcp_port is None):
            raise ValueError("Both TCP_HOST and TCP_PORT must be set to enable TCP")

        socket_path = _env_str(env, "SOCKET_PATH")
        if socket_path is None and tcp_host is None:
            socket_path = default_socket_path

        auth_token = _env_str(env, "SIDECAR_AUTH_TOKEN")
        require_auth = _env_bool(env, "SIDECAR_REQUIRE_AUTH")
        if require_auth and auth_token is None:
            raise ValueError("SIDECAR_REQUIRE_AUTH is true but SIDECAR_AUTH_TOKEN is not set")

        return cls(
            socket_path=socket_path,
            tcp_host=tcp_host,
            tcp_port=tcp_port,
            workspace_root=_env_str(env, "WORKSPACE_ROOT") or DEFAULT_WORKSPACE_ROOT,
            allow_outside_root=_env_bool(env, "SIDECAR_ALLOW_OUTSIDE_WORKSPACE_ROOT"),
            auth_token=auth_token,
            require_auth=require_auth,
            config_paths=_split_paths(_env_str(env, "SIDECAR_CONFIG")),
            log_level=_env_str(env, "SIDECAR_LOG_LEVEL"),
        )
