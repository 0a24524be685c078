"""
文件搜索（find）与内容搜索（grep）策略。

结构：
- `Searcher`：find 策略（`FdSearcher` 走 fd；`GlobSearcher` 为纯 Python 实现）
- `Grepper`：grep 策略（`RipgrepGrepper` 走 rg --json；`PythonGrepper` 为纯 Python 实现）
- accelerator 运行失败抛 `AcceleratorError`，由 Executor 捕获并透明降级到纯 Python 实现；
- 两条 grep 路径共享块格式化与结果构建，输出格式一致。

遍历约定：
- 按目录逐层、目录内按名称排序的深度优先遍历（rg 以 `--sort path` 运行，与之等价）；
- 包含隐藏文件；跳过 `.git`（grep 还跳过 `node_modules`）；不跟随 symlink。
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from coding_executor.core.cancel import CancellationToken
from coding_executor.core.contracts import FindResult, GrepDetails, GrepResult
from coding_executor.core.errors import InvalidPatternError
from coding_executor.core.globbing import match_filter_glob, match_glob
from coding_executor.core.truncate import DEFAULT_MAX_BYTES, format_size, truncate_head, truncate_line

logger = logging.getLogger(__name__)

NO_MATCHES = "No matches found"

_GREP_SKIP_DIRS = frozenset({".git", "node_modules"})
_FIND_SKIP_DIRS = frozenset({".git"})


class AcceleratorError(RuntimeError):
    """accelerator（fd/rg）无法启动或异常退出；调用方应降级，而不是上抛。"""


def _is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


def _looks_binary_prefix(data: bytes) -> bool:
    """用极轻量启发式判断二进制文件（含 NUL 字节）。"""

    return b"\x00" in data


def _walk_files(directory: str, *, skip_dirs: frozenset, cancel_token: Optional[CancellationToken]) -> Iterator[str]:
    """按名称排序的深度优先遍历，产出普通文件的绝对路径（不跟随 symlink）。"""

    if _is_cancelled(cancel_token):
        return
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.debug("skip unreadable directory %s: %s", directory, e)
        return
    for entry in entries:
        if _is_cancelled(cancel_token):
            return
        try:
            if entry.is_dir(follow_symlinks=False):
                if entry.name in skip_dirs:
                    continue
                yield from _walk_files(entry.path, skip_dirs=skip_dirs, cancel_token=cancel_token)
            elif entry.is_file(follow_symlinks=False):
                yield entry.path
        except OSError:
            continue


def _split_file_lines(text: str) -> List[str]:
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    if len(lines) > 1 and lines[-1] == "":
        lines.pop()
    return lines


def _read_text_lines(file_path: str) -> Optional[List[str]]:
    """读取文本文件为行列表；二进制或不可读返回 None。"""

    try:
        with open(file_path, "rb") as f:
            data = f.read()
    except OSError:
        return None
    if _looks_binary_prefix(data):
        return None
    return _split_file_lines(data.decode("utf-8", errors="replace"))


def _spawn(argv: List[str], *, cwd: str, stderr: object) -> "subprocess.Popen[bytes]":
    try:
        return subprocess.Popen(  # noqa: S603
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=stderr,  # type: ignore[arg-type]
        )
    except OSError as e:
        raise AcceleratorError(f"failed to start {os.path.basename(argv[0])}: {e}") from e


def _kill_quietly(proc: "subprocess.Popen[bytes]") -> None:
    if proc.poll() is None:
        try:
            proc.kill()
        except OSError:
            pass


# --------------------------------------------------------------------------- find


@dataclass(frozen=True)
class FindRequest:
    """一次 find 调用的已解析参数（search_dir 已通过路径边界校验）。"""

    search_dir: str
    pattern: str
    limit: int
    cancel_token: Optional[CancellationToken] = None


class Searcher(Protocol):
    """find 策略：返回相对 search_dir 的 posix 路径（最多 limit+1 条，用于判断截断）。"""

    def find(self, request: FindRequest) -> List[str]: ...


class FdSearcher:
    """基于 fd 的 find（仅用于不含路径分隔符的 pattern）。"""

    def __init__(self, fd_path: str) -> None:
        self._fd_path = fd_path

    def find(self, request: FindRequest) -> List[str]:
        argv = [
            self._fd_path,
            "--glob",
            "--color=never",
            "--hidden",
            "--no-ignore",
            "--type",
            "f",
            "--exclude",
            ".git",
            "--max-results",
            str(request.limit + 1),
            "--",
            request.pattern,
        ]
        with tempfile.TemporaryFile() as err_file:
            proc = _spawn(argv, cwd=request.search_dir, stderr=err_file)
            remove_callback: Optional[Callable[[], None]] = None
            if request.cancel_token is not None:
                remove_callback = request.cancel_token.add_callback(lambda: _kill_quietly(proc))
            try:
                assert proc.stdout is not None
                raw = proc.stdout.read()
                code = proc.wait()
            finally:
                if remove_callback is not None:
                    remove_callback()
                _kill_quietly(proc)
            if _is_cancelled(request.cancel_token):
                return []
            out = raw.decode("utf-8", errors="replace")
            if code != 0 and not out.strip():
                err_file.seek(0)
                message = err_file.read().decode("utf-8", errors="replace").strip()
                raise AcceleratorError(message or f"fd exited with code {code}")

        files: List[str] = []
        for line in out.splitlines():
            item = line.strip()
            if item.startswith("./"):
                item = item[2:]
            if item:
                files.append(item.replace("\\", "/"))
        return files


class GlobSearcher:
    """纯 Python find：不含 `/` 的 pattern 匹配文件名（任意深度），否则匹配相对路径。"""

    def find(self, request: FindRequest) -> List[str]:
        files: List[str] = []
        for file_path in _walk_files(request.search_dir, skip_dirs=_FIND_SKIP_DIRS, cancel_token=request.cancel_token):
            rel = os.path.relpath(file_path, request.search_dir).replace(os.sep, "/")
            if not match_glob(request.pattern, rel):
                continue
            files.append(rel)
            if len(files) > request.limit:
                break
        if _is_cancelled(request.cancel_token):
            return []
        return files


def build_find_result(paths: List[str], limit: int) -> FindResult:
    """排序、应用条数上限与 head 截断，构建 FindResult。"""

    ordered = sorted(paths)
    if not ordered:
        return FindResult(files=[], truncated=False, limit=limit)
    # 多取一条，超过上限时由行预算截断并给出 truncation 说明
    truncation = truncate_head("\n".join(ordered[: limit + 1]), max_lines=limit)
    files = truncation.content.split("\n") if truncation.content else []
    return FindResult(
        files=files,
        truncated=truncation.truncated,
        limit=limit,
        truncation=truncation if truncation.truncated else None,
    )


# --------------------------------------------------------------------------- grep


@dataclass(frozen=True)
class GrepRequest:
    """一次 grep 调用的已解析参数。"""

    workspace_root: str
    target: str
    is_directory: bool
    pattern: str
    glob: Optional[str] = None
    ignore_case: bool = False
    literal: bool = False
    context: int = 0
    limit: int = 100
    cancel_token: Optional[CancellationToken] = None


@dataclass
class GrepCollection:
    """grep 策略的原始产出（格式化后的行 + 计数信息）。"""

    lines: List[str] = field(default_factory=list)
    match_count: int = 0
    match_limit_reached: bool = False
    lines_truncated: bool = False
    cancelled: bool = False


class Grepper(Protocol):
    """grep 策略。"""

    def grep(self, request: GrepRequest) -> GrepCollection: ...


class _BlockFormatter:
    """把 (文件, 行号) 渲染为匹配块：匹配行 `path:N: text`，上下文行 `path-N- text`。"""

    def __init__(self, request: GrepRequest, collection: GrepCollection) -> None:
        self._request = request
        self._collection = collection
        self._file_cache: Dict[str, Optional[List[str]]] = {}

    def display_path(self, file_path: str) -> str:
        req = self._request
        if req.is_directory:
            rel = os.path.relpath(file_path, req.target)
            if rel != "." and not rel.startswith(".."):
                return rel.replace(os.sep, "/")
        rel = os.path.relpath(file_path, req.workspace_root)
        if rel == "." or rel.startswith(".."):
            rel = os.path.basename(file_path)
        return rel.replace(os.sep, "/")

    def lines_of(self, file_path: str) -> Optional[List[str]]:
        if file_path not in self._file_cache:
            self._file_cache[file_path] = _read_text_lines(file_path)
        return self._file_cache[file_path]

    def render(self, file_path: str, line_number: int, lines: Optional[List[str]] = None) -> None:
        shown = self.display_path(file_path)
        if lines is None:
            lines = self.lines_of(file_path)
        if not lines:
            self._collection.lines.append(f"{shown}:{line_number}: (unable to read file)")
            return
        context = self._request.context
        start = max(1, line_number - context) if context > 0 else line_number
        end = min(len(lines), line_number + context) if context > 0 else line_number
        for current in range(start, end + 1):
            raw = lines[current - 1] if current - 1 < len(lines) else ""
            text, was_truncated = truncate_line(raw.replace("\r", ""))
            if was_truncated:
                self._collection.lines_truncated = True
            sep = ":" if current == line_number else "-"
            self._collection.lines.append(f"{shown}{sep}{current}{sep} {text}")


class RipgrepGrepper:
    """基于 rg `--json` 事件流的 grep；收集满 limit 条匹配后终止 rg。"""

    def __init__(self, rg_path: str) -> None:
        self._rg_path = rg_path

    def _argv(self, request: GrepRequest) -> List[str]:
        argv = [
            self._rg_path,
            "--json",
            "--line-number",
            "--color=never",
            "--hidden",
            "--no-ignore",
            "--sort",
            "path",
            "--glob",
            "!.git",
            "--glob",
            "!node_modules",
        ]
        if request.ignore_case:
            argv.append("--ignore-case")
        if request.literal:
            argv.append("--fixed-strings")
        if request.glob:
            argv.extend(["--glob", request.glob])
        # 目录目标以其自身为 cwd 搜索 "."，使带 / 的 --glob 相对目标目录匹配
        argv.extend(["--", request.pattern, "." if request.is_directory else request.target])
        return argv

    def grep(self, request: GrepRequest) -> GrepCollection:
        collection = GrepCollection()
        formatter = _BlockFormatter(request, collection)
        killed_for_limit = False

        with tempfile.TemporaryFile() as err_file:
            cwd = request.target if request.is_directory else request.workspace_root
            proc = _spawn(self._argv(request), cwd=cwd, stderr=err_file)
            remove_callback: Optional[Callable[[], None]] = None
            if request.cancel_token is not None:
                remove_callback = request.cancel_token.add_callback(lambda: _kill_quietly(proc))
            try:
                assert proc.stdout is not None
                for raw_line in proc.stdout:
                    if collection.match_count >= request.limit:
                        break
                    event = _parse_rg_event(raw_line)
                    if event is None:
                        continue
                    file_path, line_number = event
                    if not os.path.isabs(file_path):
                        file_path = os.path.normpath(os.path.join(cwd, file_path))
                    collection.match_count += 1
                    formatter.render(file_path, line_number)
                    if collection.match_count >= request.limit:
                        collection.match_limit_reached = True
                        killed_for_limit = True
                        _kill_quietly(proc)
                        break
                code = proc.wait()
            finally:
                if remove_callback is not None:
                    remove_callback()
                _kill_quietly(proc)

            if _is_cancelled(request.cancel_token):
                collection.cancelled = True
                return collection
            if not killed_for_limit and code not in (0, 1):
                err_file.seek(0)
                message = err_file.read().decode("utf-8", errors="replace").strip()
                raise AcceleratorError(message or f"ripgrep exited with code {code}")
        return collection


def _parse_rg_event(raw_line: bytes) -> Optional[tuple]:
    """解析一行 rg --json 输出；仅返回 match 事件的 (path, line_number)。"""

    if not raw_line.strip():
        return None
    try:
        event = json.loads(raw_line)
    except ValueError:
        return None
    if not isinstance(event, dict) or event.get("type") != "match":
        return None
    data = event.get("data") or {}
    path_text = (data.get("path") or {}).get("text")
    line_number = data.get("line_number")
    if not isinstance(path_text, str) or not isinstance(line_number, int):
        return None
    return path_text, line_number


class PythonGrepper:
    """纯 Python grep（`re` 或字面量匹配，跳过二进制文件）。"""

    def _matcher(self, request: GrepRequest) -> Callable[[str], bool]:
        if request.literal:
            needle = request.pattern.lower() if request.ignore_case else request.pattern
            if request.ignore_case:
                return lambda line: needle in line.lower()
            return lambda line: needle in line
        try:
            regex = re.compile(request.pattern, re.IGNORECASE if request.ignore_case else 0)
        except re.error as e:
            raise InvalidPatternError(f"Invalid regex pattern: {e}", details={"pattern": request.pattern}) from e
        return lambda line: regex.search(line) is not None

    def _candidates(self, request: GrepRequest) -> Iterator[str]:
        if request.is_directory:
            yield from _walk_files(request.target, skip_dirs=_GREP_SKIP_DIRS, cancel_token=request.cancel_token)
        elif os.path.isfile(request.target):
            yield request.target

    def _glob_base(self, request: GrepRequest) -> str:
        return request.target if request.is_directory else request.workspace_root

    def grep(self, request: GrepRequest) -> GrepCollection:
        matches = self._matcher(request)
        collection = GrepCollection()
        formatter = _BlockFormatter(request, collection)
        glob_base = self._glob_base(request)

        for file_path in self._candidates(request):
            if request.glob:
                rel = os.path.relpath(file_path, glob_base).replace(os.sep, "/")
                if not match_filter_glob(request.glob, rel):
                    continue
            lines = _read_text_lines(file_path)
            if lines is None:
                continue
            for index, line in enumerate(lines):
                if _is_cancelled(request.cancel_token):
                    collection.cancelled = True
                    return collection
                if not matches(line):
                    continue
                collection.match_count += 1
                formatter.render(file_path, index + 1, lines)
                if collection.match_count >= request.limit:
                    collection.match_limit_reached = True
                    return collection

        if _is_cancelled(request.cancel_token):
            collection.cancelled = True
        return collection


def build_grep_result(collection: GrepCollection, limit: int, *, max_bytes: int = DEFAULT_MAX_BYTES) -> GrepResult:
    """对收集到的块应用字节预算并追加提示，构建 GrepResult。"""

    if collection.cancelled or collection.match_count == 0:
        return GrepResult(content=NO_MATCHES, truncated=False, limit=limit)

    truncation = truncate_head("\n".join(collection.lines), max_lines=len(collection.lines) + 1, max_bytes=max_bytes)
    details = GrepDetails()
    notices: List[str] = []

    if collection.match_limit_reached:
        notices.append(f"{limit} matches limit reached. Use limit={limit * 2} for more, or refine pattern")
        details.match_limit_reached = limit
    if truncation.truncated:
        notices.append(f"{format_size(max_bytes)} limit reached")
        details.truncation = truncation
    if collection.lines_truncated:
        notices.append("Some lines truncated to 500 chars. Use read tool to see full lines")
        details.lines_truncated = True

    content = truncation.content
    if notices:
        content += "\n\n[" + ". ".join(notices) + "]"
    return GrepResult(
        content=content,
        truncated=bool(notices),
        limit=limit,
        details=details if notices else None,
    )
