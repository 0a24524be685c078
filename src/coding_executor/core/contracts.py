"""
执行引擎结果协议（Truncation / Bash / Read / Write / Edit / Ls / Find / Grep）。

说明：
- Python 属性统一 snake_case；wire（sidecar JSON / CLI JSON）统一 camelCase，且省略 None 字段；
- `to_wire()` 是唯一的序列化出口，client 侧用 `model_validate()` 反序列化（别名与字段名都可接受）。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """wire 基类：camelCase 别名 + 禁止未知字段。"""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """序列化为 wire dict（camelCase，省略 None）。"""

        return self.model_dump(by_alias=True, exclude_none=True)


class TruncationResult(WireModel):
    """
    文本截断结果。

    不变量：
    - truncated=false ⇒ content 与输入完全一致
    - first_line_exceeds_limit=true ⇒ content == ""（不返回半行）
    """

    content: str
    truncated: bool = False
    truncated_by: Optional[Literal["lines", "bytes"]] = None
    total_lines: int = Field(default=0, ge=0)
    total_bytes: int = Field(default=0, ge=0)
    output_lines: int = Field(default=0, ge=0)
    output_bytes: int = Field(default=0, ge=0)
    first_line_exceeds_limit: bool = False
    max_lines: Optional[int] = None
    max_bytes: Optional[int] = None


class BashResult(WireModel):
    """run_bash 结果：ok 仅反映 exit_code==0；非零退出不是引擎错误。"""

    ok: bool
    output: str = ""
    exit_code: int
    timed_out: Optional[bool] = None
    truncation: Optional[TruncationResult] = None


class BashOutputEvent(WireModel):
    """命令输出增量（单个 chunk，标注来源流）。"""

    type: Literal["delta"] = "delta"
    data: str
    stream: Literal["stdout", "stderr"]


class BashDoneEvent(WireModel):
    """命令终止事件（每次执行恰好一个，且总是最后一个）。"""

    type: Literal["done"] = "done"
    exit_code: int
    timed_out: Optional[bool] = None
    result: Optional[BashResult] = Field(default=None, exclude=True)


BashEvent = Union[BashOutputEvent, BashDoneEvent]


class ReadResult(WireModel):
    """
    read_file 结果（按 type 区分）。

    - text：content/total_lines/has_more/truncation?
    - image：data(base64)/mime_type（不截断、不分页）
    """

    type: Literal["text", "image"]
    content: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None
    total_lines: Optional[int] = None
    has_more: Optional[bool] = None
    truncation: Optional[TruncationResult] = None


class WriteResult(WireModel):
    """write_file 结果（path 为 root 相对路径）。"""

    ok: bool
    path: str
    bytes: int = Field(ge=0)


class EditResult(WireModel):
    """edit_file 结果（diff 为整文件前后对比）。"""

    ok: bool
    path: str
    diff: str


class LsResult(WireModel):
    """ls 结果：每行一个条目，目录带 `/` 后缀。"""

    output: str
    truncation: Optional[TruncationResult] = None


class FindResult(WireModel):
    """find 结果：truncated 表示条数上限或字节/行上限生效。"""

    files: List[str] = Field(default_factory=list)
    truncated: bool = False
    limit: int
    truncation: Optional[TruncationResult] = None


class GrepDetails(WireModel):
    """grep 截断原因（匹配条数上限 / 字节上限 / 单行截断）。"""

    truncation: Optional[TruncationResult] = None
    match_limit_reached: Optional[int] = None
    lines_truncated: Optional[bool] = None


class GrepResult(WireModel):
    """grep 结果：无匹配时 content 固定为 `No matches found`。"""

    content: str
    truncated: bool = False
    limit: int
    details: Optional[GrepDetails] = None
