"""
执行引擎错误分类（异常类型）。

说明：
- 所有可预期的失败都以 `CodingExecutorError` 子类抛出，调用方（CLI / sidecar）据此映射为结构化错误；
- 每个子类携带稳定的 `kind`（英文小写下划线）与 `http_status`（sidecar 映射用）；
- accelerator（rg/fd）缺失或失败不属于错误：由调用点透明降级到 Python 实现。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可直接 JSON 序列化，CLI 错误输出用）。"""

    code: str
    message: str
    details: Dict[str, Any]


class CodingExecutorError(Exception):
    """执行引擎错误基类（不建议直接抛出）。"""

    kind: str = "unknown"
    http_status: int = 400

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        """创建引擎错误。

        参数：
        - `message`：面向调用方的英文错误信息（会原样出现在 wire `error` 字段）
        - `code`：稳定错误码（默认由 `kind` 推导，例如 `PATH_TRAVERSAL`）
        - `details`：结构化上下文信息（不得包含 secrets）
        """

        super().__init__(message)
        self.message = message
        self.code = code or self.kind.upper()
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回 message（wire 与日志都使用它）。"""

        return self.message

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class PathTraversalError(CodingExecutorError):
    """解析后的路径逃逸出 workspace root。"""

    kind = "path_traversal"


class OffsetOutOfRangeError(CodingExecutorError):
    """read 的 offset 超出文件行数。"""

    kind = "offset_out_of_range"


class TextNotFoundError(CodingExecutorError):
    """edit 的 old_text 在文件中不存在。"""

    kind = "text_not_found"


class AmbiguousMatchError(CodingExecutorError):
    """edit 的 old_text 出现多于一次。"""

    kind = "ambiguous_match"


class NoOpEditError(CodingExecutorError):
    """替换后内容与原文完全一致。"""

    kind = "no_op_edit"


class InvalidPatternError(CodingExecutorError):
    """grep 正则非法。"""

    kind = "invalid_pattern"


class NotADirectoryError_(CodingExecutorError):
    """ls 目标不是目录。"""

    kind = "not_a_directory"


class FileNotFoundError_(CodingExecutorError):
    """目标文件/目录不存在。"""

    kind = "not_found"


class InvalidArgumentError(CodingExecutorError):
    """参数不合法（空 pattern、offset < 1 等）。"""

    kind = "validation"


class ProcessSpawnError(CodingExecutorError):
    """OS 无法启动 shell / 工具进程。"""

    kind = "process_spawn_failure"
    http_status = 500


class CommandTimeoutError(CodingExecutorError):
    """命令超出时间预算（引擎以 `timed_out` 表达；sidecar client 的流读取超时抛出）。"""

    kind = "timeout"


class CancelledError_(CodingExecutorError):
    """调用方主动取消（引擎以结果表达；sidecar client 的 cancel_token 生效时抛出）。"""

    kind = "cancelled"
