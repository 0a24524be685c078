"""
glob 匹配（fallback 搜索使用，语义对齐 fd/rg）。

规则：
- pattern 不含 `/`：匹配文件名（任意深度），与 fd 默认、rg `--glob` 一致；
- pattern 含 `/`：匹配相对搜索根的 posix 路径，`**` 可跨目录；
- 支持 `*` `?` `[...]`（`[!...]` 取反）与 `{a,b}` 选择；
- grep 的 glob 支持前缀 `!` 表示排除。
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import List, Pattern


def _translate(pattern: str) -> str:
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                if pattern.startswith("**/", i):
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
                continue
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j < 0:
                out.append(re.escape(c))
                i += 1
                continue
            body = pattern[i + 1 : j]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = j + 1
        elif c == "{":
            j = pattern.find("}", i + 1)
            if j < 0:
                out.append(re.escape(c))
                i += 1
                continue
            alternatives = pattern[i + 1 : j].split(",")
            out.append("(?:" + "|".join(_translate(alt) for alt in alternatives) + ")")
            i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> Pattern[str]:
    """把 glob 翻译为锚定的正则（带缓存）。"""

    return re.compile("^" + _translate(pattern) + "$", re.DOTALL)


def is_path_pattern(pattern: str) -> bool:
    """pattern 是否按“路径”语义匹配（包含分隔符）。"""

    return "/" in pattern or "\\" in pattern


def match_glob(pattern: str, rel_path: str) -> bool:
    """
    判断相对路径是否匹配 glob。

    参数：
    - pattern：glob（`\\` 视为 `/`）
    - rel_path：相对搜索根的 posix 路径
    """

    pat = pattern.replace("\\", "/")
    if is_path_pattern(pat):
        pat = pat.lstrip("/")
        if pat.startswith("./"):
            pat = pat[2:]
        return glob_to_regex(pat).match(rel_path) is not None
    name = rel_path.rsplit("/", 1)[-1]
    return glob_to_regex(pat).match(name) is not None


def match_filter_glob(glob: str, rel_path: str) -> bool:
    """grep 的 glob 过滤：支持 `!` 前缀排除。"""

    if glob.startswith("!"):
        return not match_glob(glob[1:], rel_path)
    return match_glob(glob, rel_path)
