from __future__ import annotations

import os
from pathlib import Path
from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient

from coding_executor import __version__
from coding_executor.config.loader import load_config_dicts
from coding_executor.core.cancel import CancellationToken
from coding_executor.core.contracts import BashDoneEvent, BashEvent, BashOutputEvent
from coding_executor.core.errors import CancelledError_, CommandTimeoutError
from coding_executor.core.executor import Executor
from coding_executor.core.tool_locator import ToolLocator
from coding_executor.sidecar.app import create_app
from coding_executor.sidecar.client import SidecarClient, SidecarError

_SHELL = "/bin/bash" if os.path.exists("/bin/bash") else "/bin/sh"


def _mk_sidecar_client(root: Path, *, auth_token: str | None = None, server_token: str | None = None) -> SidecarClient:
    """把 FastAPI TestClient 注入 SidecarClient（不经过真实 socket）。"""

    cfg = load_config_dicts([{"executor": {"shell": _SHELL}}])
    executor = Executor(workspace_root=root, config=cfg, tool_locator=ToolLocator(preset={"rg": None, "fd": None}))
    app = create_app(executor=executor, auth_token=server_token, stream_poll_interval_sec=0.05)
    return SidecarClient(auth_token=auth_token, http_client=TestClient(app))


def test_health(tmp_path: Path) -> None:
    assert _mk_sidecar_client(tmp_path).health() == {"ok": True, "version": __version__}


def test_file_operations_return_typed_results(tmp_path: Path) -> None:
    c = _mk_sidecar_client(tmp_path)

    w = c.write_file("src/a.ts", "x=1")
    assert (w.ok, w.path, w.bytes) == (True, "src/a.ts", 3)

    e = c.edit_file("src/a.ts", "x=1", "x=2")
    assert "-1 x=1" in e.diff and "+1 x=2" in e.diff

    r = c.read_file("src/a.ts")
    assert r.type == "text"
    assert r.content == "x=2"
    assert r.has_more is False

    assert c.ls().output == "src/"
    assert c.find("*.ts").files == ["src/a.ts"]
    g = c.grep("x=", path="src", context=0)
    assert g.content == "a.ts:1: x=2"
    assert g.limit == 100


def test_engine_error_raises_sidecar_error(tmp_path: Path) -> None:
    c = _mk_sidecar_client(tmp_path)
    with pytest.raises(SidecarError) as ei:
        c.read_file("../../etc/passwd")
    assert ei.value.status_code == 400
    assert ei.value.message == "Invalid path: access outside workspace is not allowed"


def test_wrong_token_raises_unauthorized(tmp_path: Path) -> None:
    c = _mk_sidecar_client(tmp_path, auth_token="wrong", server_token="s3cret")
    with pytest.raises(SidecarError) as ei:
        c.ls()
    assert ei.value.status_code == 401

    ok = _mk_sidecar_client(tmp_path, auth_token="s3cret", server_token="s3cret")
    assert ok.ls().output


@pytest.mark.skipif(os.name == "nt", reason="requires a POSIX shell")
def test_run_bash_over_ndjson(tmp_path: Path) -> None:
    """远程 run_bash：on_data 收到与本地相同的事件序列，结果按本地规则拼接。"""

    c = _mk_sidecar_client(tmp_path)
    events: List[BashEvent] = []
    r = c.run_bash("echo out; echo err 1>&2; exit 4", on_data=events.append)

    assert r.ok is False
    assert r.exit_code == 4
    assert r.output.index("out") < r.output.index("err")
    assert isinstance(events[-1], BashDoneEvent)
    assert any(isinstance(e, BashOutputEvent) and e.stream == "stderr" for e in events)


@pytest.mark.skipif(os.name == "nt", reason="requires a POSIX shell")
def test_run_bash_timeout_over_ndjson(tmp_path: Path) -> None:
    r = _mk_sidecar_client(tmp_path).run_bash("sleep 5", timeout_seconds=1)
    assert r.timed_out is True
    assert r.exit_code == -1


_NDJSON_BODY = (
    b'{"type":"delta","data":"a\\n","stream":"stdout"}\n'
    b'{"type":"delta","data":"b\\n","stream":"stdout"}\n'
    b'{"type":"done","exitCode":0}\n'
)


def _mk_mock_client(handler) -> SidecarClient:  # type: ignore[no-untyped-def]
    """用 httpx.MockTransport 模拟 sidecar 的 /bash 响应。"""

    return SidecarClient(http_client=httpx.Client(transport=httpx.MockTransport(handler), base_url="http://sidecar"))


def test_run_bash_mock_stream_returns_result() -> None:
    c = _mk_mock_client(lambda request: httpx.Response(200, content=_NDJSON_BODY))
    r = c.run_bash("echo a; echo b")
    assert r.ok is True
    assert r.output == "a\nb\n"


def test_run_bash_cancel_token_raises_cancelled() -> None:
    """取消后不再消费后续事件，抛 CancelledError_。"""

    token = CancellationToken()
    events: List[BashEvent] = []

    def _on_data(event: BashEvent) -> None:
        events.append(event)
        token.cancel()

    c = _mk_mock_client(lambda request: httpx.Response(200, content=_NDJSON_BODY))
    with pytest.raises(CancelledError_) as ei:
        c.run_bash("echo a; echo b", on_data=_on_data, cancel_token=token)
    assert ei.value.kind == "cancelled"
    assert len(events) == 1


def test_run_bash_precancelled_sends_no_request() -> None:
    calls: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=_NDJSON_BODY)

    token = CancellationToken()
    token.cancel()
    with pytest.raises(CancelledError_):
        _mk_mock_client(_handler).run_bash("echo a", cancel_token=token)
    assert calls == []


def test_run_bash_stream_timeout_raises_timeout_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(CommandTimeoutError) as ei:
        _mk_mock_client(_handler).run_bash("sleep 100")
    assert ei.value.kind == "timeout"
    assert ei.value.details == {"command": "sleep 100"}


def test_run_bash_validation_error(tmp_path: Path) -> None:
    with pytest.raises(SidecarError) as ei:
        _mk_sidecar_client(tmp_path).run_bash("   ")
    assert ei.value.status_code == 400
    assert ei.value.message == "Missing or invalid command"


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"socket_path": "/tmp/s.sock", "tcp_host": "127.0.0.1", "tcp_port": 8080},
        {"tcp_host": "127.0.0.1"},
    ],
)
def test_endpoint_configuration_is_validated(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        SidecarClient(**kwargs)


def test_unix_socket_client_can_be_constructed(tmp_path: Path) -> None:
    c = SidecarClient(socket_path=str(tmp_path / "s.sock"))
    c.close()
