from __future__ import annotations

import pytest

from coding_executor.core.truncate import format_size, truncate_head, truncate_line, truncate_tail


def test_truncate_head_untouched_when_within_budget() -> None:
    """未超预算时 content 原样返回且 truncated=false。"""

    r = truncate_head("a\nb\nc", max_lines=10, max_bytes=100)
    assert r.truncated is False
    assert r.truncated_by is None
    assert r.content == "a\nb\nc"
    assert r.total_lines == 3
    assert r.output_lines == 3


def test_truncate_head_keeps_first_lines() -> None:
    r = truncate_head("a\nb\nc", max_lines=2)
    assert r.truncated is True
    assert r.truncated_by == "lines"
    assert r.content == "a\nb"
    assert r.output_lines == 2
    assert r.total_lines == 3


def test_truncate_tail_keeps_last_lines() -> None:
    r = truncate_tail("a\nb\nc", max_lines=2)
    assert r.truncated is True
    assert r.truncated_by == "lines"
    assert r.content == "b\nc"


def test_truncate_head_by_bytes_never_returns_partial_line() -> None:
    """字节预算生效时只保留完整行（换行符计入字节）。"""

    r = truncate_head("aaaa\nbbbb\ncccc", max_bytes=9)
    assert r.truncated is True
    assert r.truncated_by == "bytes"
    assert r.content == "aaaa\nbbbb"
    assert r.output_bytes == 9


def test_truncate_tail_by_bytes() -> None:
    r = truncate_tail("aaaa\nbbbb\ncccc", max_bytes=9)
    assert r.truncated_by == "bytes"
    assert r.content == "bbbb\ncccc"


@pytest.mark.parametrize("fn", [truncate_head, truncate_tail])
def test_first_line_exceeding_budget_returns_empty(fn) -> None:  # type: ignore[no-untyped-def]
    """首个待保留行本身超过字节预算：返回空内容并标记。"""

    text = "x" * 20 + "\n" + "y" * 20
    r = fn(text, max_bytes=10)
    assert r.content == ""
    assert r.truncated is True
    assert r.first_line_exceeds_limit is True
    assert r.output_lines == 0


def test_byte_budget_counts_utf8_bytes() -> None:
    r = truncate_head("中中\nab", max_bytes=6)
    assert r.truncated is True
    assert r.truncated_by == "bytes"
    assert r.content == "中中"
    assert r.output_bytes == 6
    r2 = truncate_head("中中\nab", max_bytes=5)
    assert r2.content == ""
    assert r2.first_line_exceeds_limit is True


def test_truncate_line() -> None:
    text, cut = truncate_line("a" * 600)
    assert cut is True
    assert text == "a" * 500 + "... [truncated]"
    assert truncate_line("short") == ("short", False)


@pytest.mark.parametrize(
    "num_bytes, expected",
    [(100, "100B"), (1024, "1KB"), (1536, "1.5KB"), (51200, "50KB")],
)
def test_format_size(num_bytes: int, expected: str) -> None:
    assert format_size(num_bytes) == expected


@pytest.mark.parametrize("fn", [truncate_head, truncate_tail])
@pytest.mark.parametrize(
    "text, budget",
    [
        ("a\nb\n", {"max_lines": 2}),
        ("1\n2\n3\n4\n5", {"max_lines": 3}),
        ("aaa\nbbb\nccc", {"max_bytes": 7}),
        ("aaa\nbbb\nccc\n", {"max_bytes": 8}),
        ("x" * 20, {"max_bytes": 10}),
    ],
)
def test_truncation_is_idempotent(fn, text: str, budget: dict) -> None:  # type: ignore[no-untyped-def]
    """对已截断的内容以相同预算再次截断，内容不变且不再标记 truncated。"""

    once = fn(text, **budget)
    assert once.truncated is True
    twice = fn(once.content, **budget)
    assert twice.content == once.content
    assert twice.truncated is False
