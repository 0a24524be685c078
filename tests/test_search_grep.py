from __future__ import annotations

from pathlib import Path

import pytest

from coding_executor.config.loader import load_config_dicts
from coding_executor.core.cancel import CancellationToken
from coding_executor.core.errors import FileNotFoundError_, InvalidArgumentError, InvalidPatternError
from coding_executor.core.executor import Executor
from coding_executor.core.search import NO_MATCHES
from coding_executor.core.tool_locator import ToolLocator


def _mk_executor(root: Path, *, rg: str | None = None, overlay: dict | None = None) -> Executor:
    """构造 Executor；默认强制 rg 缺失，走纯 Python 实现。"""

    return Executor(
        workspace_root=root,
        config=load_config_dicts([overlay or {}]),
        tool_locator=ToolLocator(preset={"rg": rg, "fd": None}),
    )


def _write(root: Path, rel: str, text: str) -> None:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def test_grep_no_matches(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "hello\n")
    r = _mk_executor(tmp_path).grep("zzz_not_present")
    assert r.content == NO_MATCHES == "No matches found"
    assert r.truncated is False
    assert r.details is None


def test_grep_match_lines_use_colon_format(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "foo\nbar\nfoo bar\n")
    _write(tmp_path, "sub/b.txt", "nothing\nFOO\n")
    r = _mk_executor(tmp_path).grep("foo")
    assert r.content == "a.txt:1: foo\na.txt:3: foo bar"
    assert r.truncated is False
    assert r.limit == 100


def test_grep_ignore_case(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "foo\n")
    _write(tmp_path, "sub/b.txt", "nothing\nFOO\n")
    r = _mk_executor(tmp_path).grep("foo", ignore_case=True)
    assert r.content.split("\n") == ["a.txt:1: foo", "sub/b.txt:2: FOO"]


def test_grep_context_lines_use_dash_format(tmp_path: Path) -> None:
    """上下文行 `path-N- text`，匹配行 `path:N: text`。"""

    _write(tmp_path, "a.txt", "foo\nbar\nfoo bar\n")
    r = _mk_executor(tmp_path).grep("bar", path="a.txt", context=1)
    assert r.content.split("\n") == [
        "a.txt-1- foo",
        "a.txt:2: bar",
        "a.txt-3- foo bar",
        "a.txt-2- bar",
        "a.txt:3: foo bar",
    ]


def test_grep_literal_vs_regex(tmp_path: Path) -> None:
    _write(tmp_path, "x.txt", "a.b\naxb\n")
    ex = _mk_executor(tmp_path)
    assert ex.grep("a.b", literal=True).content == "x.txt:1: a.b"
    assert ex.grep("a.b").content == "x.txt:1: a.b\nx.txt:2: axb"


def test_grep_glob_filter(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "foo\n")
    _write(tmp_path, "docs/c.md", "foo\n")
    ex = _mk_executor(tmp_path)
    assert ex.grep("foo", glob="*.md").content == "docs/c.md:1: foo"
    assert ex.grep("foo", glob="!*.md").content == "a.txt:1: foo"


def test_grep_slashed_glob_is_relative_to_search_dir(tmp_path: Path) -> None:
    """带 / 的 glob 相对搜索目录匹配，而不是相对工作区根。"""

    _write(tmp_path, "src/lib/c.py", "foo = 1\n")
    _write(tmp_path, "lib/d.py", "foo = 2\n")
    ex = _mk_executor(tmp_path)
    assert ex.grep("foo", path="src", glob="lib/*.py").content == "lib/c.py:1: foo = 1"
    assert ex.grep("foo", glob="lib/*.py").content == "lib/d.py:1: foo = 2"


def test_grep_paths_relative_to_search_dir(tmp_path: Path) -> None:
    _write(tmp_path, "src/pkg/m.py", "needle\n")
    assert _mk_executor(tmp_path).grep("needle", path="src").content == "pkg/m.py:1: needle"


def test_grep_skips_git_node_modules_and_binary(tmp_path: Path) -> None:
    _write(tmp_path, ".git/config", "needle\n")
    _write(tmp_path, "node_modules/x/index.js", "needle\n")
    (tmp_path / "blob.bin").write_bytes(b"needle\x00\x01")
    _write(tmp_path, ".env", "needle\n")
    assert _mk_executor(tmp_path).grep("needle").content == ".env:1: needle"


def test_grep_match_limit_notice(tmp_path: Path) -> None:
    _write(tmp_path, "hits.txt", "hit\n" * 5)
    r = _mk_executor(tmp_path).grep("hit", limit=2)
    assert r.content == (
        "hits.txt:1: hit\nhits.txt:2: hit\n\n"
        "[2 matches limit reached. Use limit=4 for more, or refine pattern]"
    )
    assert r.truncated is True
    assert r.details is not None
    assert r.details.match_limit_reached == 2


def test_grep_long_lines_are_truncated_with_notice(tmp_path: Path) -> None:
    _write(tmp_path, "long.txt", "needle" + "z" * 600 + "\n")
    r = _mk_executor(tmp_path).grep("needle")
    assert "... [truncated]" in r.content
    assert r.content.endswith("[Some lines truncated to 500 chars. Use read tool to see full lines]")
    assert r.details is not None and r.details.lines_truncated is True


def test_grep_byte_budget_notice(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "".join(f"needle {i}\n" for i in range(50)))
    r = _mk_executor(tmp_path, overlay={"truncation": {"max_bytes": 100}}).grep("needle")
    assert r.content.endswith("[100B limit reached]")
    assert r.details is not None and r.details.truncation is not None
    assert r.details.match_limit_reached is None


def test_grep_invalid_regex(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "x\n")
    with pytest.raises(InvalidPatternError) as ei:
        _mk_executor(tmp_path).grep("(")
    assert ei.value.message.startswith("Invalid regex pattern")


def test_grep_errors(tmp_path: Path) -> None:
    ex = _mk_executor(tmp_path)
    with pytest.raises(FileNotFoundError_):
        ex.grep("x", path="missing")
    with pytest.raises(InvalidArgumentError):
        ex.grep("   ")


def test_grep_precancelled_reports_no_matches(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "needle\n")
    token = CancellationToken()
    token.cancel()
    assert _mk_executor(tmp_path).grep("needle", cancel_token=token).content == NO_MATCHES


def test_broken_rg_falls_back_to_builtin(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "needle\n")
    r = _mk_executor(tmp_path, rg=str(tmp_path / "no-such-rg")).grep("needle")
    assert r.content == "a.txt:1: needle"


def test_ripgrep_output_matches_builtin_when_available(tmp_path: Path) -> None:
    """两条 grep 路径输出格式一致（rg 未安装时跳过）。"""

    rg_path = ToolLocator().locate("rg")
    if rg_path is None:
        pytest.skip("ripgrep not installed")

    _write(tmp_path, "a.txt", "foo\nbar\nfoo bar\n")
    _write(tmp_path, "sub/b.py", "x = 'foo'\n")
    _write(tmp_path, ".git/HEAD", "foo\n")
    _write(tmp_path, "src/lib/c.py", "foo = 1\n")
    cases = (
        {},
        {"context": 1},
        {"glob": "*.py"},
        {"limit": 1},
        {"literal": True, "ignore_case": True},
        {"path": "src", "glob": "lib/*.py"},
    )
    for kwargs in cases:
        fast = _mk_executor(tmp_path, rg=rg_path).grep("foo", **kwargs)
        slow = _mk_executor(tmp_path).grep("foo", **kwargs)
        assert fast.content == slow.content, kwargs
