from __future__ import annotations

import pytest

from coding_executor.core.globbing import is_path_pattern, match_filter_glob, match_glob


@pytest.mark.parametrize(
    "pattern, rel_path, expected",
    [
        ("*.py", "a.py", True),
        ("*.py", "deep/nested/a.py", True),
        ("*.py", "a.pyc", False),
        ("a?.txt", "ab.txt", True),
        ("a?.txt", "abc.txt", False),
        ("*.{ts,tsx}", "src/x.tsx", True),
        ("*.{ts,tsx}", "src/x.js", False),
        ("[ab].md", "b.md", True),
        ("[!ab].md", "b.md", False),
        ("src/*.py", "src/a.py", True),
        ("src/*.py", "src/x/a.py", False),
        ("src/**/*.py", "src/x/y/a.py", True),
        ("**/*.py", "a.py", True),
        ("/src/*.py", "src/a.py", True),
        ("./src/*.py", "src/a.py", True),
    ],
)
def test_match_glob(pattern: str, rel_path: str, expected: bool) -> None:
    assert match_glob(pattern, rel_path) is expected


def test_is_path_pattern() -> None:
    assert is_path_pattern("src/*.py") is True
    assert is_path_pattern("src\\*.py") is True
    assert is_path_pattern("*.py") is False


def test_match_filter_glob_negation() -> None:
    """grep 的 glob 支持 `!` 前缀排除。"""

    assert match_filter_glob("*.md", "docs/a.md") is True
    assert match_filter_glob("!*.md", "docs/a.md") is False
    assert match_filter_glob("!*.md", "src/a.py") is True
