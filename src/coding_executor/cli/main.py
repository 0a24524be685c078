"""
coding-executor CLI（bash / read / write / edit / ls / find / grep / serve）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON：成功 `{ok:true,result}`，失败 `{ok:false,error_kind,error}`
- exit code：0 成功；1 引擎错误/命令非零退出；2 参数错误
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from typing import Any, Dict, Optional, Sequence

from coding_executor.config.loader import CodingExecutorConfig, SidecarSettings, load_config
from coding_executor.core.contracts import BashEvent, WireModel
from coding_executor.core.errors import CodingExecutorError
from coding_executor.core.executor import Executor

logger = logging.getLogger(__name__)


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """将 dict 输出为 JSON 到 stdout（末尾包含换行）。"""

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _dump_error(kind: str, message: str, *, pretty: bool) -> int:
    _dump_json_to_stdout({"ok": False, "error_kind": kind, "error": message}, pretty=pretty)
    return 1


def _dump_result(result: WireModel, *, pretty: bool, ok: bool = True) -> int:
    _dump_json_to_stdout({"ok": ok, "result": result.to_wire()}, pretty=pretty)
    return 0 if ok else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="coding-executor", description="Workspace execution engine for coding agents")
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser, *, workspace_default: Optional[str] = ".") -> None:
        p.add_argument("--workspace-root", default=workspace_default, help="Workspace root directory")
        p.add_argument("--allow-outside-root", action="store_true", help="Allow absolute paths outside the workspace")
        p.add_argument("--config", action="append", default=[], help="YAML config overlay (repeatable)")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")

    bash_p = sub.add_parser("bash", help="Run a shell command in the workspace")
    _add_common_flags(bash_p)
    bash_p.add_argument("cmd", help="Command line passed to the shell")
    bash_p.add_argument("--timeout", type=float, default=None, help="Timeout in seconds (<= 0 disables)")
    bash_p.add_argument("--stream", action="store_true", help="Print events as NDJSON while the command runs")

    read_p = sub.add_parser("read", help="Read a file")
    _add_common_flags(read_p)
    read_p.add_argument("path")
    read_p.add_argument("--offset", type=int, default=None, help="First line to read (1-based)")
    read_p.add_argument("--limit", type=int, default=None, help="Maximum number of lines")

    write_p = sub.add_parser("write", help="Write a file (content from --content, --content-file or stdin)")
    _add_common_flags(write_p)
    write_p.add_argument("path")
    src = write_p.add_mutually_exclusive_group()
    src.add_argument("--content", default=None)
    src.add_argument("--content-file", default=None)

    edit_p = sub.add_parser("edit", help="Replace one exact occurrence of text in a file")
    _add_common_flags(edit_p)
    edit_p.add_argument("path")
    edit_p.add_argument("--old", required=True, dest="old_text")
    edit_p.add_argument("--new", required=True, dest="new_text")

    ls_p = sub.add_parser("ls", help="List a directory")
    _add_common_flags(ls_p)
    ls_p.add_argument("path", nargs="?", default=None)
    ls_p.add_argument("--limit", type=int, default=None)

    find_p = sub.add_parser("find", help="Find files by glob")
    _add_common_flags(find_p)
    find_p.add_argument("pattern")
    find_p.add_argument("--path", default=None)
    find_p.add_argument("--limit", type=int, default=None)

    grep_p = sub.add_parser("grep", help="Search file contents")
    _add_common_flags(grep_p)
    grep_p.add_argument("pattern")
    grep_p.add_argument("--path", default=None)
    grep_p.add_argument("--glob", default=None)
    grep_p.add_argument("-i", "--ignore-case", action="store_true")
    grep_p.add_argument("--literal", action="store_true")
    grep_p.add_argument("-C", "--context", type=int, default=0)
    grep_p.add_argument("--limit", type=int, default=None)

    serve_p = sub.add_parser("serve", help="Run the sidecar server (flags override environment variables)")
    _add_common_flags(serve_p, workspace_default=None)
    serve_p.add_argument("--socket-path", default=None)
    serve_p.add_argument("--tcp-host", default=None)
    serve_p.add_argument("--tcp-port", type=int, default=None)
    serve_p.add_argument("--auth-token", default=None)
    serve_p.add_argument("--require-auth", action="store_true")
    serve_p.add_argument("--log-level", default=None)

    return parser


def _load_cli_config(args: argparse.Namespace) -> CodingExecutorConfig:
    return load_config(list(args.config or []))


def _build_executor(args: argparse.Namespace, config: CodingExecutorConfig) -> Executor:
    return Executor(
        workspace_root=args.workspace_root,
        allow_outside_root=bool(args.allow_outside_root),
        config=config,
    )


def _handle_bash(executor: Executor, args: argparse.Namespace) -> int:
    pretty = bool(args.pretty)

    def _print_event(event: BashEvent) -> None:
        sys.stdout.write(json.dumps(event.to_wire(), ensure_ascii=False) + "\n")
        sys.stdout.flush()

    if args.stream:
        result = executor.run_bash(args.cmd, timeout_seconds=args.timeout, on_data=_print_event)
        return 0 if result.ok else 1

    result = executor.run_bash(args.cmd, timeout_seconds=args.timeout)
    return _dump_result(result, pretty=pretty, ok=result.ok)


def _handle_write(executor: Executor, args: argparse.Namespace) -> int:
    if args.content is not None:
        content = args.content
    elif args.content_file is not None:
        with open(args.content_file, "r", encoding="utf-8") as f:
            content = f.read()
    else:
        content = sys.stdin.read()
    return _dump_result(executor.write_file(args.path, content), pretty=bool(args.pretty))


def _handle_serve(args: argparse.Namespace) -> int:
    from coding_executor.sidecar.server import serve

    try:
        settings = SidecarSettings.from_env()
    except ValueError as e:
        return _dump_error("config", str(e), pretty=bool(args.pretty))

    overrides: Dict[str, Any] = {}
    if args.workspace_root:
        overrides["workspace_root"] = args.workspace_root
    if args.allow_outside_root:
        overrides["allow_outside_root"] = True
    if args.config:
        overrides["config_paths"] = list(args.config)
    if args.socket_path:
        overrides["socket_path"] = args.socket_path
    if args.tcp_host or args.tcp_port:
        overrides["tcp_host"] = args.tcp_host
        overrides["tcp_port"] = args.tcp_port
        if not args.socket_path:
            overrides["socket_path"] = None
    if args.auth_token:
        overrides["auth_token"] = args.auth_token
    if args.require_auth:
        overrides["require_auth"] = True
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = dataclasses.replace(settings, **overrides)

    if (settings.tcp_host is None) != (settings.tcp_port is None):
        return _dump_error("config", "Both TCP_HOST and TCP_PORT must be set to enable TCP", pretty=bool(args.pretty))
    if settings.require_auth and not settings.auth_token:
        return _dump_error("config", "SIDECAR_REQUIRE_AUTH is true but SIDECAR_AUTH_TOKEN is not set", pretty=bool(args.pretty))

    config = load_config(settings.config_paths)
    level_name = (settings.log_level or config.sidecar.log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO))
    try:
        serve(settings, config)
    except (OSError, RuntimeError) as e:
        return _dump_error("startup", str(e), pretty=bool(args.pretty))
    return 0


def _dispatch(executor: Executor, args: argparse.Namespace) -> int:
    pretty = bool(args.pretty)
    if args.command == "bash":
        return _handle_bash(executor, args)
    if args.command == "read":
        return _dump_result(executor.read_file(args.path, offset=args.offset, limit=args.limit), pretty=pretty)
    if args.command == "write":
        return _handle_write(executor, args)
    if args.command == "edit":
        return _dump_result(executor.edit_file(args.path, args.old_text, args.new_text), pretty=pretty)
    if args.command == "ls":
        return _dump_result(executor.ls(args.path, limit=args.limit), pretty=pretty)
    if args.command == "find":
        return _dump_result(executor.find(args.pattern, path=args.path, limit=args.limit), pretty=pretty)
    if args.command == "grep":
        result = executor.grep(
            args.pattern,
            path=args.path,
            glob=args.glob,
            ignore_case=bool(args.ignore_case),
            literal=bool(args.literal),
            context=args.context,
            limit=args.limit,
        )
        return _dump_result(result, pretty=pretty)
    return _dump_error("validation", f"unknown command: {args.command}", pretty=pretty)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    if args.command == "serve":
        return _handle_serve(args)

    pretty = bool(args.pretty)
    try:
        config = _load_cli_config(args)
    except (OSError, ValueError) as e:
        return _dump_error("config", str(e), pretty=pretty)

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.WARNING, stream=sys.stderr)

    executor = _build_executor(args, config)
    try:
        return _dispatch(executor, args)
    except CodingExecutorError as e:
        return _dump_error(e.kind, e.message, pretty=pretty)
    except OSError as e:
        return _dump_error("io", str(e), pretty=pretty)

