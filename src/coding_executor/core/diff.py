"""
edit 结果的可读 diff（DiffGenerator）。

输出格式（纯展示用途）：
- 删除行：`-<行号> 内容`（旧文件行号）
- 新增行：`+<行号> 内容`（新文件行号）
- 上下文：` <行号> 内容`，每个变更块前后最多 context_lines 行；更远的部分折叠为 ` <空白> ...`
- 行号列按较大文件的行数右对齐
"""

from __future__ import annotations

import difflib
from typing import List, Tuple

_Part = Tuple[str, List[str]]  # (equal|removed|added, lines)


def _split_lines(text: str) -> List[str]:
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def _diff_parts(old_lines: List[str], new_lines: List[str]) -> List[_Part]:
    """基于 SequenceMatcher 的行级 diff，替换块拆成“先删后增”。"""

    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    parts: List[_Part] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            parts.append(("equal", old_lines[i1:i2]))
            continue
        if tag in ("replace", "delete"):
            parts.append(("removed", old_lines[i1:i2]))
        if tag in ("replace", "insert"):
            parts.append(("added", new_lines[j1:j2]))
    return parts


def generate_diff_string(old_content: str, new_content: str, context_lines: int = 4) -> str:
    """
    生成整文件前后的 diff 文本。

    参数：
    - old_content/new_content：编辑前后的完整文本
    - context_lines：变更块两侧保留的上下文行数
    """

    old_lines = _split_lines(old_content)
    new_lines = _split_lines(new_content)
    parts = _diff_parts(old_lines, new_lines)

    width = len(str(max(len(old_lines), len(new_lines), 1)))
    ellipsis = f" {'':>{width}} ..."

    output: List[str] = []
    old_no = 1
    new_no = 1
    last_was_change = False

    for idx, (kind, lines) in enumerate(parts):
        if kind == "added":
            for line in lines:
                output.append(f"+{new_no:>{width}} {line}")
                new_no += 1
            last_was_change = True
            continue
        if kind == "removed":
            for line in lines:
                output.append(f"-{old_no:>{width}} {line}")
                old_no += 1
            last_was_change = True
            continue

        next_is_change = idx + 1 < len(parts) and parts[idx + 1][0] != "equal"
        if not (last_was_change or next_is_change):
            old_no += len(lines)
            new_no += len(lines)
            last_was_change = False
            continue

        shown = lines
        skip_start = 0
        skip_end = 0
        if not last_was_change:
            skip_start = max(0, len(lines) - context_lines)
            shown = lines[skip_start:]
        if not next_is_change and len(shown) > context_lines:
            skip_end = len(shown) - context_lines
            shown = shown[:context_lines]

        if skip_start > 0:
            output.append(ellipsis)
            old_no += skip_start
            new_no += skip_start
        for line in shown:
            output.append(f" {old_no:>{width}} {line}")
            old_no += 1
            new_no += 1
        if skip_end > 0:
            output.append(ellipsis)
            old_no += skip_end
            new_no += skip_end
        last_was_change = False

    return "\n".join(output)
