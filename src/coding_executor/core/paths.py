"""
Workspace 路径边界（PathGuard）。

约定：
- 所有传入路径（包括看起来是绝对路径的）都被解释为“相对 workspace root”：
  agent 输出的 `/src/a.py` 指的是沙箱内的 `root/src/a.py`，而不是宿主机任意位置；
- 边界检查基于词法归一化后的绝对路径（`..`、混合分隔符都会先被折叠），不跟随 symlink；
- `allow_outside_root=True` 仅用于非沙箱的本地执行：绝对路径原样使用，且不做边界检查；
  相对路径仍然不允许通过 `..` 逃逸。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from coding_executor.core.errors import PathTraversalError

PathLike = Union[str, Path]


def normalize_root(root: PathLike) -> str:
    """把 workspace root 归一化为绝对路径字符串（词法，不 resolve symlink）。"""

    return os.path.normpath(os.path.abspath(os.fspath(root)))


def ensure_workspace(root: PathLike) -> str:
    """
    确保 workspace root 存在（mkdir -p）并返回其绝对路径。

    说明：
    - 引擎只创建、从不删除 root。
    """

    abs_root = normalize_root(root)
    os.makedirs(abs_root, exist_ok=True)
    return abs_root


def resolve_path_within_workspace(root: PathLike, requested: str, *, allow_outside_root: bool = False) -> str:
    """
    将用户路径解析为 workspace 内的绝对路径。

    参数：
    - root：workspace root
    - requested：相对或“绝对样式”的路径（`\\` 会被视为 `/`）
    - allow_outside_root：为 true 时绝对路径原样放行（不做边界检查）

    返回：
    - 归一化后的绝对路径字符串

    异常：
    - `PathTraversalError`：解析结果不在 root 内
    """

    abs_root = normalize_root(root)
    rel = str(requested or "").replace("\\", "/")

    if not rel or rel == "." or rel == "/":
        return abs_root

    if rel.startswith("/"):
        if allow_outside_root:
            return os.path.normpath(rel)
        rel = rel.lstrip("/")
        if not rel:
            return abs_root

    resolved = os.path.normpath(os.path.join(abs_root, rel))
    if resolved != abs_root and not resolved.startswith(abs_root.rstrip(os.sep) + os.sep):
        raise PathTraversalError(
            "Invalid path: access outside workspace is not allowed",
            details={"path": requested},
        )
    return resolved


def relative_to_workspace(root: PathLike, absolute_path: str) -> str:
    """返回 posix 风格的 root 相对路径；root 自身返回 `.`。"""

    rel = os.path.relpath(absolute_path, normalize_root(root))
    return "." if rel in ("", ".") else rel.replace(os.sep, "/")
