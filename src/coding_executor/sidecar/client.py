"""
Sidecar client（httpx，同步）。

说明：
- 通过 Unix socket（`httpx.HTTPTransport(uds=...)`）或 TCP 连接 sidecar；二者必须且只能配置一个；
- 方法与 `Executor` 对齐，返回同一组结果模型；
- 任何失败（`ok:false`、非 2xx、非法 JSON、连接失败）都抛 `SidecarError`；
- `run_bash` 的流读取超时抛 `CommandTimeoutError`，调用方取消抛 `CancelledError_`；
- 测试可注入任意 `httpx.Client`（例如 FastAPI 的 `TestClient`）。
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from coding_executor.core.cancel import CancellationToken
from coding_executor.core.contracts import (
    BashDoneEvent,
    BashEvent,
    BashOutputEvent,
    BashResult,
    EditResult,
    FindResult,
    GrepResult,
    LsResult,
    ReadResult,
    WriteResult,
)
from coding_executor.core.errors import CancelledError_, CommandTimeoutError
from coding_executor.core.truncate import truncate_tail

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 600.0


class SidecarError(RuntimeError):
    """sidecar 调用失败。"""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _drop_none(body: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in body.items() if v is not None}


class SidecarClient:
    """
    sidecar HTTP client。

    参数：
    - socket_path：Unix socket 路径
    - tcp_host/tcp_port：TCP 地址
    - auth_token：bearer token（可选）
    - timeout_sec：单次请求超时（`/bash` 的流式读取同样受此约束）
    - http_client：外部注入的 client（注入时忽略地址参数，且不负责关闭）
    """

    def __init__(
        self,
        *,
        socket_path: Optional[str] = None,
        tcp_host: Optional[str] = None,
        tcp_port: Optional[int] = None,
        auth_token: Optional[str] = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._headers: Dict[str, str] = {}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"

        if http_client is not None:
            self._client = http_client
            self._owns_client = False
            return

        use_tcp = tcp_host is not None or tcp_port is not None
        if bool(socket_path) == use_tcp:
            raise ValueError("configure exactly one of socket_path or tcp_host/tcp_port")
        if use_tcp and (not tcp_host or not tcp_port):
            raise ValueError("both tcp_host and tcp_port are required for TCP")

        timeout = httpx.Timeout(timeout_sec, connect=10.0)
        if socket_path:
            self._client = httpx.Client(
                base_url="http://sidecar",
                transport=httpx.HTTPTransport(uds=socket_path),
                timeout=timeout,
            )
        else:
            self._client = httpx.Client(base_url=f"http://{tcp_host}:{int(tcp_port or 0)}", timeout=timeout)
        self._owns_client = True

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SidecarClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------ transport

    @staticmethod
    def _decode(resp: httpx.Response) -> Dict[str, Any]:
        try:
            obj = resp.json()
        except ValueError:
            raise SidecarError(f"invalid JSON response (HTTP {resp.status_code})", status_code=resp.status_code) from None
        if not isinstance(obj, dict):
            raise SidecarError(f"unexpected response (HTTP {resp.status_code})", status_code=resp.status_code)
        return obj

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = self._client.request(method, path, json=body, headers=self._headers)
        except httpx.HTTPError as e:
            raise SidecarError(f"sidecar request failed: {e}") from e
        envelope = self._decode(resp)
        if resp.status_code >= 400 or not envelope.get("ok"):
            message = envelope.get("error") or f"sidecar returned HTTP {resp.status_code}"
            raise SidecarError(str(message), status_code=resp.status_code)
        return envelope

    def _call(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        result = self._request("POST", path, _drop_none(body)).get("result")
        if not isinstance(result, dict):
            raise SidecarError(f"missing result in {path} response")
        return result

    # ------------------------------------------------------------------ operations

    def health(self) -> Dict[str, Any]:
        """返回 `{ok, version}`。"""

        return self._request("GET", "/health")

    def run_bash(
        self,
        command: str,
        *,
        timeout_seconds: Optional[float] = None,
        on_data: Optional[Callable[[BashEvent], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BashResult:
        """
        远程执行命令（消费 NDJSON 事件流）。

        参数：
        - cancel_token：在事件之间检查；取消后断开连接（服务端据此终止命令）并抛 `CancelledError_`

        返回：
        - BashResult：output 由收到的 stdout/stderr 增量按与本地执行相同的规则拼接并截断

        异常：
        - CommandTimeoutError：等待事件流超过 `timeout_sec`
        - CancelledError_：调用方通过 cancel_token 取消
        """

        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        done: Optional[BashDoneEvent] = None
        body = _drop_none({"command": command, "timeoutSeconds": timeout_seconds})

        def _raise_if_cancelled() -> None:
            if cancel_token is not None and cancel_token.cancelled:
                raise CancelledError_("bash command cancelled", details={"command": command})

        _raise_if_cancelled()
        try:
            with self._client.stream("POST", "/bash", json=body, headers=self._headers) as resp:
                if resp.status_code != 200:
                    resp.read()
                    envelope = self._decode(resp)
                    raise SidecarError(str(envelope.get("error") or f"HTTP {resp.status_code}"), status_code=resp.status_code)
                for line in resp.iter_lines():
                    if not line.strip():
                        continue
                    try:
                        obj = json.loads(line)
                    except ValueError:
                        raise SidecarError("invalid NDJSON line in bash stream") from None
                    kind = obj.get("type") if isinstance(obj, dict) else None
                    if kind == "delta":
                        event = BashOutputEvent.model_validate(obj)
                        (stderr_parts if event.stream == "stderr" else stdout_parts).append(event.data)
                        if on_data is not None:
                            on_data(event)
                        _raise_if_cancelled()
                    elif kind == "done":
                        done = BashDoneEvent.model_validate(obj)
                        if on_data is not None:
                            on_data(done)
                        break
                    elif kind == "error":
                        raise SidecarError(str(obj.get("message") or "bash command failed"))
                    else:
                        logger.debug("ignoring unknown bash event: %r", kind)
        except httpx.TimeoutException as e:
            raise CommandTimeoutError(f"bash stream timed out: {e}", details={"command": command}) from e
        except httpx.HTTPError as e:
            raise SidecarError(f"sidecar request failed: {e}") from e

        if done is None:
            raise SidecarError("bash stream ended without a done event")

        combined = "\n".join(part for part in ("".join(stdout_parts), "".join(stderr_parts)) if part)
        truncation = truncate_tail(combined)
        return BashResult(
            ok=done.exit_code == 0,
            output=truncation.content,
            exit_code=done.exit_code,
            timed_out=done.timed_out,
            truncation=truncation if truncation.truncated else None,
        )

    def read_file(self, path: str, *, offset: Optional[int] = None, limit: Optional[int] = None) -> ReadResult:
        return ReadResult.model_validate(self._call("/read", {"path": path, "offset": offset, "limit": limit}))

    def write_file(self, path: str, content: str) -> WriteResult:
        return WriteResult.model_validate(self._call("/write", {"path": path, "content": content}))

    def edit_file(self, path: str, old_text: str, new_text: str) -> EditResult:
        return EditResult.model_validate(self._call("/edit", {"path": path, "oldText": old_text, "newText": new_text}))

    def ls(self, path: Optional[str] = None, *, limit: Optional[int] = None) -> LsResult:
        return LsResult.model_validate(self._call("/ls", {"path": path, "limit": limit}))

    def find(self, pattern: str, *, path: Optional[str] = None, limit: Optional[int] = None) -> FindResult:
        return FindResult.model_validate(self._call("/find", {"pattern": pattern, "path": path, "limit": limit}))

    def grep(
        self,
        pattern: str,
        *,
        path: Optional[str] = None,
        glob: Optional[str] = None,
        ignore_case: Optional[bool] = None,
        literal: Optional[bool] = None,
        context: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> GrepResult:
        body = {
            "pattern": pattern,
            "path": path,
            "glob": glob,
            "ignoreCase": ignore_case,
            "literal": literal,
            "context": context,
            "limit": limit,
        }
        return GrepResult.model_validate(self._call("/grep", body))
