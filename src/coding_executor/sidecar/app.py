"""
Sidecar HTTP 应用（FastAPI）。

协议：
- `GET /health` → `{ok:true, version}`
- `POST /bash` → NDJSON：若干 `{type:"delta",data,stream}`，最后一行 `{type:"done",exitCode,timedOut?}`；
  streaming 开始后才失败时写一行 `{type:"error",message}`
- `POST /read|/write|/edit|/ls|/find|/grep` → `{ok:true,result}` / `{ok:false,error}`

约定：
- 请求体必须为 `Content-Type: application/json` 的 JSON object（空 body 视为 `{}`）；
- 所有错误响应都是 `{ok:false,error}`（不含 stack trace）；
- 客户端在 `/bash` 执行期间断开连接时取消该命令。
"""

from __future__ import annotations

import hmac
import json
import logging
import re
from typing import Annotated, Any, AsyncIterator, Callable, Dict, Optional, Type, TypeVar

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from coding_executor import __version__
from coding_executor.core.bash import BashStream
from coding_executor.core.cancel import CancellationToken
from coding_executor.core.contracts import WireModel
from coding_executor.core.errors import CodingExecutorError
from coding_executor.core.executor import Executor
from coding_executor.sidecar.errors import http_error

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

_T = TypeVar("_T", bound=BaseModel)


class _RequestBody(BaseModel):
    """请求体基类：camelCase 字段；未知字段忽略。"""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


def _non_blank(value: Optional[str]) -> Optional[str]:
    if value is not None and not value.strip():
        raise ValueError("must be a non-empty string")
    return value


def _optional_text(value: Optional[str]) -> Optional[str]:
    """空白字符串视为未提供。"""

    if value is None or not value.strip():
        return None
    return value


def _positive(value: Optional[float]) -> Optional[float]:
    """非正数视为未提供（使用默认值）。"""

    if value is None or value <= 0:
        return None
    return value


NonBlankStr = Annotated[str, AfterValidator(_non_blank)]
OptionalText = Annotated[Optional[str], AfterValidator(_optional_text)]
OptionalPositive = Annotated[Optional[float], AfterValidator(_positive)]


class BashRequest(_RequestBody):
    command: NonBlankStr
    timeout_seconds: OptionalPositive = None


class ReadRequest(_RequestBody):
    path: NonBlankStr
    offset: Optional[int] = None
    limit: Optional[int] = None


class WriteRequest(_RequestBody):
    path: NonBlankStr
    content: str


class EditRequest(_RequestBody):
    path: NonBlankStr
    old_text: str = Field(min_length=1)
    new_text: str


class LsRequest(_RequestBody):
    path: OptionalText = None
    limit: Optional[int] = None


class FindRequestBody(_RequestBody):
    pattern: NonBlankStr
    path: OptionalText = None
    limit: Optional[int] = None


class GrepRequestBody(_RequestBody):
    pattern: NonBlankStr
    path: OptionalText = None
    glob: OptionalText = None
    ignore_case: bool = False
    literal: bool = False
    context: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = None


def _error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def _ok_response(result: WireModel) -> JSONResponse:
    return JSONResponse({"ok": True, "result": result.to_wire()}, status_code=200)


async def _json_body(request: Request) -> Dict[str, Any]:
    """读取 JSON object 请求体；不合法时抛 400。"""

    content_type = request.headers.get("content-type") or ""
    if "application/json" not in content_type.lower():
        raise http_error("Invalid JSON body", status_code=400)
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        raise http_error("Invalid JSON body", status_code=400) from None
    if not isinstance(parsed, dict):
        raise http_error("Invalid JSON body", status_code=400)
    return parsed


def _validate(model: Type[_T], body: Dict[str, Any]) -> _T:
    """按请求模型校验；失败时以首个出错字段生成 `Missing or invalid <field>`。"""

    try:
        return model.model_validate(body)
    except ValidationError as e:
        errors = e.errors()
        loc = errors[0].get("loc") if errors else None
        field_name = str(loc[0]) if loc else "request body"
        raise http_error(f"Missing or invalid {field_name}", status_code=400) from None


async def _call_executor(fn: Callable[..., WireModel], *args: Any, **kwargs: Any) -> JSONResponse:
    """在线程池中执行同步引擎调用，并映射为响应 envelope。"""

    try:
        result = await run_in_threadpool(fn, *args, **kwargs)
    except CodingExecutorError as e:
        return _error_response(e.message, e.http_status)
    except OSError as e:
        return _error_response(str(e), 400)
    return _ok_response(result)


async def _ndjson_events(
    request: Request,
    stream: BashStream,
    token: CancellationToken,
    *,
    poll_interval_sec: float,
) -> AsyncIterator[bytes]:
    """
    把命令事件流转换为 NDJSON。

    终止条件：
    - 写出 done 事件
    - 或客户端断开连接（此时取消命令）
    """

    try:
        while not stream.finished:
            if await request.is_disconnected():
                logger.info("client disconnected; cancelling command")
                token.cancel()
                return
            event = await run_in_threadpool(stream.poll, poll_interval_sec)
            if event is None:
                continue
            yield (json.dumps(event.to_wire(), ensure_ascii=False) + "\n").encode("utf-8")
    except Exception as e:
        logger.exception("bash stream failed")
        token.cancel()
        yield (json.dumps({"type": "error", "message": str(e) or "Failed to run bash command"}) + "\n").encode("utf-8")
    finally:
        if not stream.finished:
            token.cancel()


def create_app(
    *,
    executor: Executor,
    auth_token: Optional[str] = None,
    require_auth: bool = False,
    version: str = __version__,
    stream_poll_interval_sec: float = 0.2,
) -> FastAPI:
    """
    创建 sidecar 应用。

    参数：
    - executor：执行引擎（决定 workspace root 与配置）
    - auth_token：配置后，携带错误 bearer token 的请求一律 401
    - require_auth：为 true 时缺少 token 也 401（必须同时配置 auth_token）
    - version：`/health` 返回的版本号
    - stream_poll_interval_sec：`/bash` 检查客户端断开的间隔

    异常：
    - ValueError：require_auth 为 true 但未配置 auth_token
    """

    token_value = (auth_token or "").strip() or None
    if require_auth and token_value is None:
        raise ValueError("SIDECAR_REQUIRE_AUTH is true but SIDECAR_AUTH_TOKEN is not set")

    async def _authorize(request: Request) -> None:
        if token_value is None:
            return
        match = _BEARER_RE.match(request.headers.get("authorization") or "")
        provided = match.group(1).strip() if match else ""
        if not provided:
            if require_auth:
                raise http_error("Unauthorized", status_code=401)
            return
        if not hmac.compare_digest(provided.encode("utf-8"), token_value.encode("utf-8")):
            raise http_error("Unauthorized", status_code=401)

    app = FastAPI(title="coding-executor-sidecar", version=version, dependencies=[Depends(_authorize)])

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            message = "Not found"
        elif exc.status_code == 405:
            message = "Method not allowed"
        else:
            message = str(exc.detail)
        return _error_response(message, exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("error handling %s %s", request.method, request.url.path)
        return _error_response("Internal server error", 500)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "version": version}

    @app.post("/bash")
    async def bash(request: Request) -> Any:
        body = _validate(BashRequest, await _json_body(request))
        token = CancellationToken()
        try:
            stream = await run_in_threadpool(
                executor.stream_bash,
                body.command,
                timeout_seconds=body.timeout_seconds,
                cancel_token=token,
            )
        except CodingExecutorError as e:
            return _error_response(e.message, e.http_status)
        return StreamingResponse(
            _ndjson_events(request, stream, token, poll_interval_sec=stream_poll_interval_sec),
            media_type=NDJSON_MEDIA_TYPE,
        )

    @app.post("/read")
    async def read(request: Request) -> JSONResponse:
        body = _validate(ReadRequest, await _json_body(request))
        return await _call_executor(executor.read_file, body.path, offset=body.offset, limit=body.limit)

    @app.post("/write")
    async def write(request: Request) -> JSONResponse:
        body = _validate(WriteRequest, await _json_body(request))
        return await _call_executor(executor.write_file, body.path, body.content)

    @app.post("/edit")
    async def edit(request: Request) -> JSONResponse:
        body = _validate(EditRequest, await _json_body(request))
        return await _call_executor(executor.edit_file, body.path, body.old_text, body.new_text)

    @app.post("/ls")
    async def ls(request: Request) -> JSONResponse:
        body = _validate(LsRequest, await _json_body(request))
        return await _call_executor(executor.ls, body.path, limit=body.limit)

    @app.post("/find")
    async def find(request: Request) -> JSONResponse:
        body = _validate(FindRequestBody, await _json_body(request))
        return await _call_executor(executor.find, body.pattern, path=body.path, limit=body.limit)

    @app.post("/grep")
    async def grep(request: Request) -> JSONResponse:
        body = _validate(GrepRequestBody, await _json_body(request))
        return await _call_executor(
            executor.grep,
            body.pattern,
            path=body.path,
            glob=body.glob,
            ignore_case=body.ignore_case,
            literal=body.literal,
            context=body.context,
            limit=body.limit,
        )

    return app

