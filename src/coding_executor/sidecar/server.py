"""
Sidecar 进程入口（uvicorn）。

行为：
- 设置来自环境变量（`SidecarSettings.from_env`），引擎配置来自内置默认值 + `SIDECAR_CONFIG` overlays；
- Unix socket 与 TCP 监听器由同一个 uvicorn server 服务；
- 启动前清理残留的 socket 文件（同路径是普通文件时拒绝启动）；退出时删除 socket 文件；
- SIGTERM/SIGINT 由 uvicorn 处理（停止接收新连接，等待进行中的请求结束）。
"""

from __future__ import annotations

import logging
import os
import socket
import stat
import sys
from typing import List, Optional, Sequence

import uvicorn
from fastapi import FastAPI

from coding_executor.config.loader import CodingExecutorConfig, SidecarSettings, load_config
from coding_executor.core.executor import Executor
from coding_executor.sidecar.app import create_app

logger = logging.getLogger(__name__)


def prepare_socket_path(socket_path: str) -> None:
    """
    确保 socket 可以绑定：创建父目录，删除残留 socket 文件。

    异常：
    - RuntimeError：路径已存在且不是 socket
    """

    parent = os.path.dirname(socket_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    if not os.path.lexists(socket_path):
        return
    if not stat.S_ISSOCK(os.lstat(socket_path).st_mode):
        raise RuntimeError(f"Socket path exists and is not a socket: {socket_path}")
    os.unlink(socket_path)


def bind_listeners(settings: SidecarSettings) -> List[socket.socket]:
    """按设置绑定 Unix socket 和/或 TCP 监听 socket（由 uvicorn 负责 listen）。"""

    listeners: List[socket.socket] = []
    try:
        if settings.socket_path:
            prepare_socket_path(settings.socket_path)
            unix_sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            listeners.append(unix_sock)
            unix_sock.bind(settings.socket_path)
            logger.info("coding sidecar listening on socket %s", settings.socket_path)
        if settings.tcp_enabled:
            tcp_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listeners.append(tcp_sock)
            tcp_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            tcp_sock.bind((str(settings.tcp_host), int(settings.tcp_port or 0)))
            logger.info("coding sidecar listening on http://%s:%s", settings.tcp_host, settings.tcp_port)
    except OSError:
        for sock in listeners:
            sock.close()
        raise
    return listeners


def build_app(settings: SidecarSettings, config: Optional[CodingExecutorConfig] = None) -> FastAPI:
    """由设置与配置组装 Executor 与 FastAPI 应用。"""

    cfg = config if config is not None else load_config(settings.config_paths)
    executor = Executor(
        workspace_root=settings.workspace_root,
        allow_outside_root=settings.allow_outside_root,
        config=cfg,
    )
    return create_app(
        executor=executor,
        auth_token=settings.auth_token,
        require_auth=settings.require_auth,
        stream_poll_interval_sec=cfg.sidecar.stream_poll_interval_sec,
    )


def serve(settings: SidecarSettings, config: Optional[CodingExecutorConfig] = None) -> None:
    """阻塞运行 sidecar，直到收到终止信号。"""

    cfg = config if config is not None else load_config(settings.config_paths)
    app = build_app(settings, cfg)
    log_level = (settings.log_level or cfg.sidecar.log_level).lower()

    listeners = bind_listeners(settings)
    try:
        server = uvicorn.Server(uvicorn.Config(app, log_level=log_level, lifespan="off"))
        server.run(sockets=listeners)
    finally:
        for sock in listeners:
            sock.close()
        if settings.socket_path and os.path.lexists(settings.socket_path):
            try:
                os.unlink(settings.socket_path)
            except OSError as e:
                logger.error("failed to remove socket file %s: %s", settings.socket_path, e)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """`python -m coding_executor.sidecar` 入口（无命令行参数，全部来自环境变量）。"""

    del argv
    try:
        settings = SidecarSettings.from_env()
        config = load_config(settings.config_paths)
        settings = SidecarSettings.from_env(default_socket_path=config.sidecar.default_socket_path)
    except (OSError, ValueError) as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("invalid sidecar configuration: %s", e)
        return 1

    level_name = (settings.log_level or config.sidecar.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("workspace root: %s", os.path.abspath(settings.workspace_root))

    try:
        serve(settings, config)
    except (OSError, RuntimeError, ValueError) as e:
        logger.error("failed to start sidecar: %s", e)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
