"""
取消令牌（CancellationToken）。

语义：
- `cancel()` 幂等：重复取消、完成后取消都是 no-op；
- 回调在取消线程内同步执行（用于立即 kill 子进程）；若注册时已取消则立即执行；
- 长任务在子进程 kill 点与 fallback 循环边界检查 `cancelled`。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class CancellationToken:
    """显式取消令牌（线程安全）。"""

    def __init__(self) -> None:
        """创建一个未取消的令牌。"""

        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """是否已取消。"""

        return self._event.is_set()

    def cancel(self) -> None:
        """触发取消并执行已注册回调（仅首次生效）。"""

        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            self._run_callback(cb)

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """
        注册取消回调。

        返回：
        - 注销函数（任务结束后调用，避免对已完成任务重复 kill）
        """

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)

                def _remove() -> None:
                    with self._lock:
                        if cb in self._callbacks:
                            self._callbacks.remove(cb)

                return _remove
        self._run_callback(cb)
        return lambda: None

    def wait(self, timeout: float) -> bool:
        """等待取消（最多 timeout 秒）；返回是否已取消。"""

        return self._event.wait(timeout)

    @staticmethod
    def _run_callback(cb: Callable[[], None]) -> None:
        try:
            cb()
        except Exception:
            # 回调由任务自身注册（kill 进程等）；失败不影响其它回调
            logger.debug("cancellation callback failed", exc_info=True)
