"""
Accelerator 工具发现（rg / fd）。

行为：
- 先走 PATH（`shutil.which`），再探测常见安装目录；
- 候选路径必须能执行 `--version` 且退出码为 0（存在但损坏/占位的二进制视为缺失）；
- 结果按 tool id 缓存在 locator 实例内（写一次、不失效）；进程级默认实例由
  `get_default_tool_locator()` 提供，测试可注入新实例或通过 preset 强制缺失。
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_COMMON_PATHS: Tuple[str, ...] = ("/usr/bin", "/usr/local/bin", "/bin", "/opt/homebrew/bin")

# Debian/Ubuntu 将 fd 打包为 `fdfind`
_BINARY_NAMES: Dict[str, Tuple[str, ...]] = {
    "rg": ("rg",),
    "fd": ("fd", "fdfind"),
}


def _command_works(binary_path: str, *, timeout_sec: float) -> bool:
    """以 `--version` 探测二进制是否可用（超时/异常/非零退出都视为不可用）。"""

    try:
        proc = subprocess.run(  # noqa: S603
            [binary_path, "--version"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout_sec,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return proc.returncode == 0


class ToolLocator:
    """
    accelerator 路径解析器（带缓存）。

    参数：
    - common_paths：PATH 未命中时额外探测的目录
    - probe_timeout_sec：`--version` 健康检查超时（秒）
    - preset：预置结果（例如 `{"rg": None}` 强制 rg 缺失；测试用）
    """

    def __init__(
        self,
        *,
        common_paths: Sequence[str] = DEFAULT_COMMON_PATHS,
        probe_timeout_sec: float = 5.0,
        preset: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        self._common_paths = tuple(common_paths)
        self._probe_timeout_sec = float(probe_timeout_sec)
        self._lock = threading.Lock()
        self._cache: Dict[str, Optional[str]] = dict(preset or {})

    def _candidates(self, tool_id: str) -> Iterable[str]:
        names = _BINARY_NAMES.get(tool_id, (tool_id,))
        for name in names:
            found = shutil.which(name)
            if found:
                yield found
        for name in names:
            for directory in self._common_paths:
                full = os.path.join(directory, name)
                if os.path.isfile(full) and os.access(full, os.X_OK):
                    yield full

    def _probe(self, tool_id: str) -> Optional[str]:
        seen = set()
        for candidate in self._candidates(tool_id):
            if candidate in seen:
                continue
            seen.add(candidate)
            if _command_works(candidate, timeout_sec=self._probe_timeout_sec):
                return os.path.abspath(candidate)
        return None

    def locate(self, tool_id: str) -> Optional[str]:
        """
        返回工具绝对路径；缺失返回 None（同步、缓存）。

        说明：
        - 并发首次调用可能重复探测，但写入结果一致（幂等 lazy-init）。
        """

        with self._lock:
            if tool_id in self._cache:
                return self._cache[tool_id]
        path = self._probe(tool_id)
        with self._lock:
            return self._cache.setdefault(tool_id, path)

    def ensure(self, tool_id: str, *, silent: bool = False) -> Optional[str]:
        """同 `locate`；缺失时记录一条 info 日志（silent=true 时不记录）。"""

        path = self.locate(tool_id)
        if path is None and not silent:
            logger.info("tool %r not found on PATH; using built-in fallback", tool_id)
        return path


_default_locator: Optional[ToolLocator] = None
_default_lock = threading.Lock()


def get_default_tool_locator(*, probe_timeout_sec: float = 5.0) -> ToolLocator:
    """返回进程级默认 locator（首次调用时创建；probe_timeout_sec 仅在创建时生效）。"""

    global _default_locator
    with _default_lock:
        if _default_locator is None:
            _default_locator = ToolLocator(probe_timeout_sec=probe_timeout_sec)
        return _default_locator
