from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

import pytest

from coding_executor.core.tool_locator import ToolLocator

posix_only = pytest.mark.skipif(os.name == "nt", reason="shell-script fake binaries are POSIX only")


def _write_fake_tool(directory: Path, name: str, *, exit_code: int) -> Path:
    p = directory / name
    p.write_text(f"#!/bin/sh\nexit {exit_code}\n", encoding="utf-8")
    p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return p


def test_preset_forces_tool_missing() -> None:
    """preset 可强制缺失（测试走纯 Python 路径）。"""

    locator = ToolLocator(preset={"rg": None, "fd": None})
    assert locator.locate("rg") is None
    assert locator.ensure("fd", silent=True) is None


def test_preset_path_is_returned_as_is() -> None:
    locator = ToolLocator(preset={"rg": "/opt/tools/rg"})
    assert locator.locate("rg") == "/opt/tools/rg"


def test_unknown_tool_is_missing(tmp_path: Path) -> None:
    locator = ToolLocator(common_paths=[str(tmp_path)])
    assert locator.locate("coding-executor-no-such-tool-xyz") is None


@posix_only
def test_working_binary_in_common_path_is_found(tmp_path: Path) -> None:
    fake = _write_fake_tool(tmp_path, "coding-executor-fake-ok", exit_code=0)
    locator = ToolLocator(common_paths=[str(tmp_path)])
    assert locator.locate("coding-executor-fake-ok") == str(fake)


@posix_only
def test_broken_binary_is_treated_as_missing(tmp_path: Path) -> None:
    """存在但 `--version` 失败的二进制视为缺失。"""

    _write_fake_tool(tmp_path, "coding-executor-fake-broken", exit_code=3)
    locator = ToolLocator(common_paths=[str(tmp_path)])
    assert locator.locate("coding-executor-fake-broken") is None


@posix_only
def test_result_is_cached(tmp_path: Path) -> None:
    fake = _write_fake_tool(tmp_path, "coding-executor-fake-cached", exit_code=0)
    locator = ToolLocator(common_paths=[str(tmp_path)])
    assert locator.locate("coding-executor-fake-cached") == str(fake)

    fake.unlink()
    assert locator.locate("coding-executor-fake-cached") == str(fake)


def test_ensure_logs_when_missing(caplog: pytest.LogCaptureFixture) -> None:
    locator = ToolLocator(preset={"rg": None})
    with caplog.at_level(logging.INFO, logger="coding_executor.core.tool_locator"):
        assert locator.ensure("rg") is None
    assert any("not found" in r.getMessage() for r in caplog.records)

    caplog.clear()
    with caplog.at_level(logging.INFO, logger="coding_executor.core.tool_locator"):
        locator.ensure("rg", silent=True)
    assert caplog.records == []
