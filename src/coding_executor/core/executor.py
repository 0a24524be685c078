"""
执行引擎 façade（Executor）。

职责：
- 组合 PathGuard / OutputTruncator / ToolLocator / DiffGenerator，对外提供：
  run_bash、stream_bash、read_file、write_file、edit_file、ls、find、grep；
- 所有路径先经 `resolve_path_within_workspace` 校验；workspace root 在首次使用时创建；
- 可预期失败抛 `CodingExecutorError` 子类；accelerator 失败透明降级，不上抛。

说明：
- Executor 本身无可变共享状态（tool 缓存在 ToolLocator 内），可被多个线程并发使用。
"""

from __future__ import annotations

import base64
import logging
import os
import subprocess
from typing import Callable, Optional

from coding_executor.config.loader import CodingExecutorConfig, load_config
from coding_executor.core.bash import BashStream
from coding_executor.core.cancel import CancellationToken
from coding_executor.core.contracts import BashEvent, BashResult, EditResult, FindResult, GrepResult, LsResult, ReadResult, WriteResult
from coding_executor.core.diff import generate_diff_string
from coding_executor.core.errors import (
    AmbiguousMatchError,
    FileNotFoundError_,
    InvalidArgumentError,
    NoOpEditError,
    NotADirectoryError_,
    OffsetOutOfRangeError,
    ProcessSpawnError,
    TextNotFoundError,
)
from coding_executor.core.globbing import is_path_pattern
from coding_executor.core.paths import PathLike, ensure_workspace, normalize_root, relative_to_workspace, resolve_path_within_workspace
from coding_executor.core.search import (
    AcceleratorError,
    FdSearcher,
    FindRequest,
    GlobSearcher,
    GrepCollection,
    Grepper,
    GrepRequest,
    PythonGrepper,
    RipgrepGrepper,
    Searcher,
    build_find_result,
    build_grep_result,
)
from coding_executor.core.tool_locator import ToolLocator, get_default_tool_locator
from coding_executor.core.truncate import truncate_head

logger = logging.getLogger(__name__)

_IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

EMPTY_DIRECTORY = "(empty directory)"

OnData = Callable[[BashEvent], None]


def _positive_or(value: Optional[int], default: int) -> int:
    """调用方未给出（或给出非正数）时使用默认上限。"""

    if value is None or int(value) <= 0:
        return int(default)
    return int(value)


def _require_text(value: object, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"Missing or invalid {what}", details={"field": what})
    return value


class Executor:
    """
    workspace 执行引擎。

    参数：
    - workspace_root：所有操作的根目录（不存在时首次使用自动创建）
    - allow_outside_root：为 true 时绝对路径不做边界检查（仅用于非沙箱的本地执行）
    - config：配置（默认加载内置默认配置）
    - tool_locator：accelerator 发现器（默认使用进程级实例；测试可注入）
    """

    def __init__(
        self,
        *,
        workspace_root: PathLike,
        allow_outside_root: bool = False,
        config: Optional[CodingExecutorConfig] = None,
        tool_locator: Optional[ToolLocator] = None,
    ) -> None:
        self._root = normalize_root(workspace_root)
        self._allow_outside_root = bool(allow_outside_root)
        self._config = config if config is not None else load_config()
        self._tool_locator = tool_locator

    @property
    def workspace_root(self) -> str:
        return self._root

    @property
    def config(self) -> CodingExecutorConfig:
        return self._config

    def _locator(self) -> ToolLocator:
        if self._tool_locator is None:
            self._tool_locator = get_default_tool_locator(probe_timeout_sec=self._config.search.probe_timeout_sec)
        return self._tool_locator

    def _accelerator(self, tool_id: str) -> Optional[str]:
        if not self._config.search.use_accelerators:
            return None
        return self._locator().ensure(tool_id, silent=True)

    def _resolve(self, path: Optional[str]) -> str:
        ensure_workspace(self._root)
        return resolve_path_within_workspace(self._root, path or ".", allow_outside_root=self._allow_outside_root)

    # ------------------------------------------------------------------ bash

    def stream_bash(
        self,
        command: str,
        *,
        timeout_seconds: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BashStream:
        """
        启动命令并返回事件流（delta… → done）。

        参数：
        - command：交给 shell（`<shell> -c`）执行的命令行
        - timeout_seconds：超时秒数（默认取配置；<= 0 表示不设超时）
        - cancel_token：取消令牌；取消后终止整个进程组

        异常：
        - InvalidArgumentError：command 为空
        - ProcessSpawnError：shell 无法启动
        """

        _require_text(command, "command")
        root = ensure_workspace(self._root)
        cfg = self._config.executor
        timeout = cfg.default_timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        stream_kwargs = dict(
            timeout_seconds=timeout,
            cancel_token=cancel_token,
            terminate_grace_ms=cfg.terminate_grace_ms,
            max_capture_bytes=cfg.max_capture_bytes,
            max_lines=self._config.truncation.max_lines,
            max_bytes=self._config.truncation.max_bytes,
        )

        if cancel_token is not None and cancel_token.cancelled:
            return BashStream(None, **stream_kwargs)  # type: ignore[arg-type]

        popen_kwargs = {}
        if os.name != "nt":
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(  # noqa: S603
                [cfg.shell, "-c", command],
                cwd=root,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **popen_kwargs,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to start shell {cfg.shell}: {e}", details={"shell": cfg.shell}) from e

        logger.debug("started command pid=%s timeout=%ss", proc.pid, timeout)
        return BashStream(proc, **stream_kwargs)  # type: ignore[arg-type]

    def run_bash(
        self,
        command: str,
        *,
        timeout_seconds: Optional[float] = None,
        on_data: Optional[OnData] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BashResult:
        """
        执行命令并等待结束。

        说明：
        - `on_data` 依次收到每个事件（delta 按来源标注），最后一个总是 done；
        - 非零退出不是错误：`ok=false` 且 `exit_code` 为进程退出码；超时/取消时 exit_code 为 -1。
        """

        stream = self.stream_bash(command, timeout_seconds=timeout_seconds, cancel_token=cancel_token)
        for event in stream:
            if on_data is not None:
                on_data(event)
        return stream.result()

    # ------------------------------------------------------------------ files

    def read_file(self, path: str, *, offset: Optional[int] = None, limit: Optional[int] = None) -> ReadResult:
        """
        读取文件（文本分页 / 图片 base64）。

        参数：
        - offset：起始行号（1-based，默认 1）
        - limit：最多读取的行数（默认读到结尾，再受截断预算约束）
        """

        _require_text(path, "path")
        abs_path = self._resolve(path)
        if not os.path.exists(abs_path):
            raise FileNotFoundError_(f"File not found: {path}", details={"path": path})
        if os.path.isdir(abs_path):
            raise InvalidArgumentError(f"Path is a directory: {path}", details={"path": path})

        mime_type = _IMAGE_MIME_TYPES.get(os.path.splitext(abs_path)[1].lower())
        if mime_type is not None:
            with open(abs_path, "rb") as f:
                data = base64.b64encode(f.read()).decode("ascii")
            return ReadResult(type="image", data=data, mime_type=mime_type)

        with open(abs_path, "rb") as f:
            text = f.read().decode("utf-8", errors="replace")
        all_lines = text.split("\n")
        total_lines = len(all_lines)

        start_line = 1 if offset is None else int(offset)
        if start_line < 1:
            raise InvalidArgumentError("Offset must be >= 1", details={"offset": start_line})
        start = start_line - 1
        if start >= total_lines:
            raise OffsetOutOfRangeError(
                f"Offset {start_line} is beyond end of file ({total_lines} lines total)",
                details={"offset": start_line, "total_lines": total_lines},
            )

        if limit is not None:
            if int(limit) < 1:
                raise InvalidArgumentError("Limit must be >= 1", details={"limit": limit})
            end = min(start + int(limit), total_lines)
        else:
            end = total_lines
        selected = "\n".join(all_lines[start:end])

        truncation = truncate_head(
            selected,
            max_lines=self._config.truncation.max_lines,
            max_bytes=self._config.truncation.max_bytes,
        )
        has_more = truncation.truncated or end < total_lines
        return ReadResult(
            type="text",
            content=truncation.content,
            total_lines=total_lines,
            has_more=has_more,
            truncation=truncation if truncation.truncated else None,
        )

    def write_file(self, path: str, content: str) -> WriteResult:
        """写入（覆盖）文件，自动创建父目录；返回 root 相对路径与 UTF-8 字节数。"""

        _require_text(path, "path")
        if not isinstance(content, str):
            raise InvalidArgumentError("Missing or invalid content", details={"field": "content"})
        abs_path = self._resolve(path)
        if os.path.isdir(abs_path):
            raise InvalidArgumentError(f"Path is a directory: {path}", details={"path": path})
        os.makedirs(os.path.dirname(abs_path), exist_ok=True)
        data = content.encode("utf-8")
        with open(abs_path, "wb") as f:
            f.write(data)
        return WriteResult(ok=True, path=relative_to_workspace(self._root, abs_path), bytes=len(data))

    def edit_file(self, path: str, old_text: str, new_text: str) -> EditResult:
        """
        精确替换文件中唯一的一处文本并返回 diff。

        异常：
        - TextNotFoundError：old_text 不存在
        - AmbiguousMatchError：old_text 出现多次（需要更多上下文）
        - NoOpEditError：替换后内容不变
        """

        _require_text(path, "path")
        if not isinstance(old_text, str) or old_text == "":
            raise InvalidArgumentError("Missing or invalid oldText", details={"field": "oldText"})
        if not isinstance(new_text, str):
            raise InvalidArgumentError("Missing or invalid newText", details={"field": "newText"})

        abs_path = self._resolve(path)
        if not os.path.isfile(abs_path):
            raise FileNotFoundError_(f"File not found: {path}", details={"path": path})
        with open(abs_path, "rb") as f:
            original = f.read().decode("utf-8", errors="replace")

        occurrences = original.count(old_text)
        if occurrences == 0:
            raise TextNotFoundError(
                f"Could not find the exact text in {path}. "
                "The old text must match exactly including all whitespace and newlines.",
                details={"path": path},
            )
        if occurrences > 1:
            raise AmbiguousMatchError(
                f"Found {occurrences} occurrences of the text in {path}. "
                "The text must be unique. Please provide more context to make it unique.",
                details={"path": path, "occurrences": occurrences},
            )

        updated = original.replace(old_text, new_text, 1)
        if updated == original:
            raise NoOpEditError(
                f"No changes made to {path}. The replacement produced identical content. "
                "This might indicate an issue with special characters or the text not existing as expected.",
                details={"path": path},
            )

        with open(abs_path, "wb") as f:
            f.write(updated.encode("utf-8"))
        return EditResult(ok=True, path=path, diff=generate_diff_string(original, updated))

    def ls(self, path: Optional[str] = None, *, limit: Optional[int] = None) -> LsResult:
        """列出目录的直接子项（不递归；名称大小写不敏感排序；目录带 `/` 后缀）。"""

        target = path if isinstance(path, str) and path.strip() else "."
        abs_path = self._resolve(target)
        if not os.path.exists(abs_path):
            raise FileNotFoundError_(f"Path not found: {target}", details={"path": target})
        if not os.path.isdir(abs_path):
            raise NotADirectoryError_("Path is not a directory", details={"path": target})

        effective_limit = _positive_or(limit, self._config.limits.ls)
        with os.scandir(abs_path) as it:
            entries = sorted(it, key=lambda e: e.name.lower())

        lines = []
        for entry in entries[:effective_limit]:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                is_dir = False
            lines.append(entry.name + ("/" if is_dir else ""))

        if not lines:
            return LsResult(output=EMPTY_DIRECTORY)
        truncation = truncate_head(
            "\n".join(lines),
            max_lines=self._config.truncation.max_lines,
            max_bytes=self._config.truncation.max_bytes,
        )
        return LsResult(output=truncation.content, truncation=truncation if truncation.truncated else None)

    # ------------------------------------------------------------------ search

    def _searcher(self, pattern: str) -> Searcher:
        fd_path = None if is_path_pattern(pattern) else self._accelerator("fd")
        return FdSearcher(fd_path) if fd_path else GlobSearcher()

    def _grepper(self) -> Grepper:
        rg_path = self._accelerator("rg")
        return RipgrepGrepper(rg_path) if rg_path else PythonGrepper()

    def find(
        self,
        pattern: str,
        *,
        path: Optional[str] = None,
        limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FindResult:
        """按 glob 查找文件（返回相对搜索目录的路径，已排序）。"""

        _require_text(pattern, "pattern")
        search_dir = self._resolve(path.strip() if isinstance(path, str) and path.strip() else ".")
        if not os.path.isdir(search_dir):
            raise NotADirectoryError_("Path is not a directory", details={"path": path})
        effective_limit = _positive_or(limit, self._config.limits.find)
        if cancel_token is not None and cancel_token.cancelled:
            return build_find_result([], effective_limit)

        request = FindRequest(search_dir=search_dir, pattern=pattern, limit=effective_limit, cancel_token=cancel_token)
        searcher = self._searcher(pattern)
        try:
            paths = searcher.find(request)
        except AcceleratorError as e:
            logger.warning("fd failed, falling back to built-in find: %s", e)
            paths = GlobSearcher().find(request)
        return build_find_result(paths, effective_limit)

    def grep(
        self,
        pattern: str,
        *,
        path: Optional[str] = None,
        glob: Optional[str] = None,
        ignore_case: bool = False,
        literal: bool = False,
        context: Optional[int] = None,
        limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GrepResult:
        """
        在文件内容中搜索 pattern。

        参数：
        - path：搜索目录或单个文件（默认 root）
        - glob：文件过滤（可用 `!` 前缀排除）
        - literal：按字面量匹配；否则为正则
        - context：匹配行前后各展示的行数
        - limit：最多收集的匹配数（达到后提示可加大 limit）
        """

        _require_text(pattern, "pattern")
        pattern = pattern.strip()
        target_arg = path if isinstance(path, str) and path.strip() else "."
        target = self._resolve(target_arg)
        if not os.path.exists(target):
            raise FileNotFoundError_(f"Path not found: {target_arg}", details={"path": target_arg})

        effective_limit = _positive_or(limit, self._config.limits.grep)
        request = GrepRequest(
            workspace_root=self._root,
            target=target,
            is_directory=os.path.isdir(target),
            pattern=pattern,
            glob=glob.strip() if isinstance(glob, str) and glob.strip() else None,
            ignore_case=bool(ignore_case),
            literal=bool(literal),
            context=max(0, int(context or 0)),
            limit=effective_limit,
            cancel_token=cancel_token,
        )
        max_bytes = self._config.truncation.max_bytes
        if cancel_token is not None and cancel_token.cancelled:
            return build_grep_result(GrepCollection(cancelled=True), effective_limit, max_bytes=max_bytes)

        grepper = self._grepper()
        try:
            collection = grepper.grep(request)
        except AcceleratorError as e:
            logger.warning("ripgrep failed, falling back to built-in grep: %s", e)
            collection = PythonGrepper().grep(request)
        return build_grep_result(collection, effective_limit, max_bytes=max_bytes)

