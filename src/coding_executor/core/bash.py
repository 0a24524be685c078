"""
shell 命令执行（流式事件 + 超时/取消）。

模型：
- `BashStream` 是一次命令执行的事件通道：若干 `BashOutputEvent`（按来源标注 stdout/stderr），
  最后恰好一个 `BashDoneEvent`；in-process 调用方与 sidecar 的 NDJSON writer 消费同一抽象；
- stdout/stderr 各由一个 reader 线程读取（`read1` 保证实时），同时写入有界“尾部缓冲”；
- supervisor 线程短轮询等待进程：超时或取消时终止整个进程组（SIGTERM → grace → SIGKILL），
  reader 线程只做有界 join，不会因为管道未关闭而无限阻塞调用方。
"""

from __future__ import annotations

import codecs
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from typing import IO, Iterator, List, Optional

from coding_executor.core.cancel import CancellationToken
from coding_executor.core.contracts import BashDoneEvent, BashEvent, BashOutputEvent, BashResult
from coding_executor.core.truncate import truncate_tail

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096
_POLL_INTERVAL_SEC = 0.05
_READER_JOIN_TIMEOUT_SEC = 1.0


class _TailRingBuffer:
    """保留尾部的有界字节缓冲。"""

    def __init__(self, max_bytes: int) -> None:
        """
        参数：
        - `max_bytes`：允许保留的最大字节数；为 0 时不保留任何输出（但会标记 truncated）。
        """

        if max_bytes < 0:
            raise ValueError("max_bytes 必须 >= 0")
        self._max_bytes = max_bytes
        self._buf = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        """追加字节；超出上限时丢弃头部。"""

        if not chunk:
            return
        if self._max_bytes == 0:
            self.truncated = True
            return
        if len(chunk) >= self._max_bytes:
            self._buf[:] = chunk[-self._max_bytes :]
            self.truncated = True
            return
        overflow = len(self._buf) + len(chunk) - self._max_bytes
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True
        self._buf.extend(chunk)

    def get_text(self) -> str:
        """解码为文本；发生过截断时丢弃首个不完整的行。"""

        text = bytes(self._buf).decode("utf-8", errors="replace")
        if self.truncated:
            _, sep, rest = text.partition("\n")
            text = rest if sep else text
        return text


def terminate_process_group(proc: "subprocess.Popen[bytes]", *, grace_ms: int) -> None:
    """
    终止子进程：SIGTERM → (grace) → SIGKILL。

    注意：
    - POSIX 下优先终止进程组（子进程以 start_new_session 启动）；
    - Windows 下退化为 terminate/kill。
    """

    if proc.poll() is not None:
        return

    if os.name == "nt":
        try:
            proc.terminate()
        except OSError:
            pass
        try:
            proc.wait(timeout=grace_ms / 1000.0)
            return
        except subprocess.TimeoutExpired:
            pass
        try:
            proc.kill()
        except OSError:
            pass
        return

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except OSError:
        try:
            proc.terminate()
        except OSError:
            pass

    try:
        proc.wait(timeout=grace_ms / 1000.0)
        return
    except subprocess.TimeoutExpired:
        pass

    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        try:
            proc.kill()
        except OSError:
            pass


class BashStream:
    """
    一次命令执行的事件流（迭代器）。

    用法：
    - `for event in stream: ...`（阻塞迭代，最后一个事件为 done）
    - `stream.poll(timeout)`：带超时取下一个事件（超时返回 None；`finished` 为 true 后不应再调用）
    - `stream.result()`：消费剩余事件并返回 `BashResult`
    """

    def __init__(
        self,
        proc: Optional["subprocess.Popen[bytes]"],
        *,
        timeout_seconds: float,
        cancel_token: Optional[CancellationToken],
        terminate_grace_ms: int,
        max_capture_bytes: int,
        max_lines: int,
        max_bytes: int,
    ) -> None:
        self._proc = proc
        self._timeout_seconds = float(timeout_seconds)
        self._cancel_token = cancel_token
        self._terminate_grace_ms = int(terminate_grace_ms)
        self._max_lines = int(max_lines)
        self._max_bytes = int(max_bytes)

        self._queue: "queue.Queue[BashEvent]" = queue.Queue()
        self._emit_lock = threading.Lock()
        self._closed = False
        self._done: Optional[BashDoneEvent] = None
        self.finished = False

        self._stdout_buf = _TailRingBuffer(max_capture_bytes)
        self._stderr_buf = _TailRingBuffer(max_capture_bytes)
        self._readers: List[threading.Thread] = []

        if proc is None:
            # 执行前已取消：不启动进程，直接给出终止事件
            self._finish(BashResult(ok=False, output="", exit_code=-1), timed_out=False)
            return

        for stream, name, buf in (
            (proc.stdout, "stdout", self._stdout_buf),
            (proc.stderr, "stderr", self._stderr_buf),
        ):
            t = threading.Thread(target=self._read_stream, args=(stream, name, buf), daemon=True)
            t.start()
            self._readers.append(t)
        threading.Thread(target=self._supervise, daemon=True).start()

    # --- producer side -------------------------------------------------

    def _read_stream(self, stream: Optional[IO[bytes]], name: str, buf: _TailRingBuffer) -> None:
        """持续读取一个输出流，增量解码为文本并发出 delta 事件。"""

        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = stream.read1(_READ_CHUNK)  # type: ignore[attr-defined]
            except (OSError, ValueError):
                break
            if not chunk:
                break
            self._emit_output(name, buf, chunk, decoder.decode(chunk))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._emit_output(name, buf, b"", tail)
        try:
            stream.close()
        except (OSError, ValueError) as e:
            logger.debug("closing %s pipe failed: %s", name, e)

    def _emit_output(self, name: str, buf: _TailRingBuffer, raw: bytes, text: str) -> None:
        with self._emit_lock:
            if self._closed:
                return
            buf.append(raw)
            if text:
                self._queue.put(BashOutputEvent(data=text, stream=name))  # type: ignore[arg-type]

    def _supervise(self) -> None:
        """等待进程结束；超时/取消时终止进程组，然后发出 done。"""

        proc = self._proc
        assert proc is not None
        timed_out = False
        killed = False
        deadline = time.monotonic() + self._timeout_seconds if self._timeout_seconds > 0 else None

        while True:
            if self._cancel_token is not None and self._cancel_token.cancelled:
                if proc.poll() is None:
                    killed = True
                    terminate_process_group(proc, grace_ms=self._terminate_grace_ms)
                break
            wait_for = _POLL_INTERVAL_SEC
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    if proc.poll() is None:
                        timed_out = True
                        killed = True
                        terminate_process_group(proc, grace_ms=self._terminate_grace_ms)
                    break
                wait_for = min(wait_for, remaining)
            try:
                proc.wait(timeout=wait_for)
                break
            except subprocess.TimeoutExpired:
                continue

        # 管道只由各自的 reader 线程关闭：read1 持锁期间 close 会阻塞
        join_deadline = time.monotonic() + _READER_JOIN_TIMEOUT_SEC
        for t in self._readers:
            t.join(timeout=max(0.0, join_deadline - time.monotonic()))
        lingering = sum(1 for t in self._readers if t.is_alive())
        if lingering:
            logger.debug("%d output pipe(s) still held open after pid=%s exited", lingering, proc.pid)

        returncode = proc.poll()
        if killed or returncode is None or returncode < 0:
            exit_code = -1
        else:
            exit_code = int(returncode)

        with self._emit_lock:
            stdout_text = self._stdout_buf.get_text()
            stderr_text = self._stderr_buf.get_text()

        combined = "\n".join(part for part in (stdout_text, stderr_text) if part)
        truncation = truncate_tail(combined, max_lines=self._max_lines, max_bytes=self._max_bytes)
        result = BashResult(
            ok=exit_code == 0,
            output=truncation.content,
            exit_code=exit_code,
            timed_out=True if timed_out else None,
            truncation=truncation if truncation.truncated else None,
        )
        if timed_out:
            logger.info("command timed out after %ss (pid=%s)", self._timeout_seconds, proc.pid)
        self._finish(result, timed_out=timed_out)

    def _finish(self, result: BashResult, *, timed_out: bool) -> None:
        done = BashDoneEvent(exit_code=result.exit_code, timed_out=True if timed_out else None, result=result)
        with self._emit_lock:
            self._closed = True
            self._done = done
            self._queue.put(done)

    # --- consumer side -------------------------------------------------

    def poll(self, timeout: Optional[float] = None) -> Optional[BashEvent]:
        """
        取下一个事件。

        返回：
        - 事件；timeout 内无事件时返回 None
        """

        if self.finished:
            raise StopIteration
        try:
            event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(event, BashDoneEvent):
            self.finished = True
        return event

    def __iter__(self) -> Iterator[BashEvent]:
        return self

    def __next__(self) -> BashEvent:
        event = self.poll()
        assert event is not None
        return event

    def cancel(self) -> None:
        """取消执行（需在创建时提供 cancel_token）。"""

        if self._cancel_token is not None:
            self._cancel_token.cancel()

    def result(self) -> BashResult:
        """消费剩余事件直到 done，返回最终结果。"""

        for _ in self:
            pass
        assert self._done is not None and self._done.result is not None
        return self._done.result
