from __future__ import annotations

from fastapi import HTTPException


def http_error(message: str, *, status_code: int) -> HTTPException:
    """
    构造 sidecar 统一错误（由 app 的 exception handler 渲染为 `{ok:false,error}`）。

    参数：
    - message：人类可读的错误信息（原样作为 `error` 字段）
    - status_code：HTTP 状态码
    """

    return HTTPException(status_code=int(status_code), detail=str(message))
