"""
coding_executor：AI coding agent 的 workspace 执行引擎。

对外入口：
- `Executor`：in-process 调用（bash / read / write / edit / ls / find / grep）
- `coding_executor.sidecar`：同一引擎的 HTTP 服务（Unix socket / TCP）与 client
"""

from __future__ import annotations

from coding_executor.core.cancel import CancellationToken
from coding_executor.core.errors import CodingExecutorError
from coding_executor.core.executor import Executor

__version__ = "0.1.0"

__all__ = ["CancellationToken", "CodingExecutorError", "Executor", "__version__"]
