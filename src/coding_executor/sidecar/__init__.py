"""Sidecar：通过 Unix socket / TCP 暴露执行引擎的 HTTP 服务及其 client。"""

from coding_executor.sidecar.app import create_app
from coding_executor.sidecar.client import SidecarClient, SidecarError

__all__ = ["SidecarClient", "SidecarError", "create_app"]
