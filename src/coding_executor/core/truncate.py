"""
输出截断（OutputTruncator）。

策略：
- head：保留前 N 行（文件读取、目录列表、搜索结果）
- tail：保留后 N 行（命令输出：构建/测试最有用的信息通常在末尾）
- 行预算先生效，再逐行收缩直到 UTF-8 字节数落入预算；
- 不返回半行：若首个待保留行本身就超过字节预算，返回空内容并标记 first_line_exceeds_limit。
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from coding_executor.core.contracts import TruncationResult

DEFAULT_MAX_LINES = 2000
DEFAULT_MAX_BYTES = 50 * 1024
GREP_MAX_LINE_LENGTH = 500

_LINE_TRUNCATED_SUFFIX = "... [truncated]"


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _untruncated(text: str, *, total_lines: int, total_bytes: int, max_lines: int, max_bytes: int) -> TruncationResult:
    return TruncationResult(
        content=text,
        truncated=False,
        truncated_by=None,
        total_lines=total_lines,
        total_bytes=total_bytes,
        output_lines=total_lines,
        output_bytes=total_bytes,
        first_line_exceeds_limit=False,
        max_lines=max_lines,
        max_bytes=max_bytes,
    )


def _truncate(text: str, *, max_lines: int, max_bytes: int, from_tail: bool) -> TruncationResult:
    """head/tail 的共同实现（from_tail=true 时从末尾向前收集）。"""

    total_bytes = _byte_len(text)
    lines = text.split("\n")
    total_lines = len(lines)

    if total_lines <= max_lines and total_bytes <= max_bytes:
        return _untruncated(text, total_lines=total_lines, total_bytes=total_bytes, max_lines=max_lines, max_bytes=max_bytes)

    ordered = list(reversed(lines)) if from_tail else lines
    if _byte_len(ordered[0]) > max_bytes:
        return TruncationResult(
            content="",
            truncated=True,
            truncated_by="bytes",
            total_lines=total_lines,
            total_bytes=total_bytes,
            output_lines=0,
            output_bytes=0,
            first_line_exceeds_limit=True,
            max_lines=max_lines,
            max_bytes=max_bytes,
        )

    kept: List[str] = []
    kept_bytes = 0
    truncated_by = "lines"
    for line in ordered[:max_lines]:
        # 除首行外，每行都带一个换行符
        cost = _byte_len(line) + (1 if kept else 0)
        if kept_bytes + cost > max_bytes:
            truncated_by = "bytes"
            break
        kept.append(line)
        kept_bytes += cost

    if from_tail:
        kept.reverse()
    content = "\n".join(kept)
    return TruncationResult(
        content=content,
        truncated=True,
        truncated_by=truncated_by,
        total_lines=total_lines,
        total_bytes=total_bytes,
        output_lines=len(kept),
        output_bytes=kept_bytes,
        first_line_exceeds_limit=False,
        max_lines=max_lines,
        max_bytes=max_bytes,
    )


def truncate_head(text: str, *, max_lines: Optional[int] = None, max_bytes: Optional[int] = None) -> TruncationResult:
    """
    保留开头部分。

    参数：
    - text：原始文本
    - max_lines：行预算（默认 DEFAULT_MAX_LINES）
    - max_bytes：UTF-8 字节预算（默认 DEFAULT_MAX_BYTES）
    """

    return _truncate(
        text,
        max_lines=DEFAULT_MAX_LINES if max_lines is None else int(max_lines),
        max_bytes=DEFAULT_MAX_BYTES if max_bytes is None else int(max_bytes),
        from_tail=False,
    )


def truncate_tail(text: str, *, max_lines: Optional[int] = None, max_bytes: Optional[int] = None) -> TruncationResult:
    """保留末尾部分（参数同 `truncate_head`）。"""

    return _truncate(
        text,
        max_lines=DEFAULT_MAX_LINES if max_lines is None else int(max_lines),
        max_bytes=DEFAULT_MAX_BYTES if max_bytes is None else int(max_bytes),
        from_tail=True,
    )


def truncate_line(line: str, max_chars: int = GREP_MAX_LINE_LENGTH) -> Tuple[str, bool]:
    """
    单行字符数截断（grep 展示用，独立于整体输出预算）。

    返回：
    - (text, was_truncated)
    """

    if len(line) <= max_chars:
        return line, False
    return f"{line[:max_chars]}{_LINE_TRUNCATED_SUFFIX}", True


def format_size(num_bytes: int) -> str:
    """把字节数格式化为 `50KB` 这类提示文本。"""

    if num_bytes >= 1024 and num_bytes % 1024 == 0:
        return f"{num_bytes // 1024}KB"
    if num_bytes >= 1024:
        return f"{num_bytes / 1024:.1f}KB"
    return f"{num_bytes}B"
