"""轮询outbox文档, 内容变化时回调

用轮询而不是系统文件通知, 各平台行为一致。一个间隔内的多次写入只产生一次
事件, 内容为最后一次写入的结果。
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple

from document_store import DocumentStore

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], Awaitable[None]]


class ChangeWatcher:
    def __init__(self, store: DocumentStore, path: Path, on_change: ChangeCallback,
                 interval: float = 1.0, retry_delay: float = 1.0):
        self.store = store
        self.path = Path(path)
        self.on_change = on_change
        self.interval = interval
        self.retry_delay = retry_delay
        self.watching = False
        self._signature: Optional[Tuple[int, int]] = None
        self._checking = False
        self._task: Optional[asyncio.Task] = None

    def _current_signature(self) -> Optional[Tuple[int, int]]:
        st = self.store.stat(self.path)
        if st is None:
            return None
        return st.st_mtime_ns, st.st_size

    async def bootstrap(self) -> None:
        """等待文件存在(不存在则创建空文件), 然后记录基准"""
        while not self.watching:
            signature = self._current_signature()
            if signature is not None:
                self._signature = signature
                self.watching = True
                logger.info("开始监控文件变化: %s", self.path)
                return
            logger.info("文件不存在，创建空文件: %s", self.path)
            try:
                self.store.ensure_exists(self.path)
            except OSError:
                logger.exception("创建文件失败: %s", self.path)
            await asyncio.sleep(self.retry_delay)

    async def check(self) -> bool:
        """执行一次检查, 发出变化事件时返回True"""
        if self._checking:
            logger.debug("上一次检查尚未完成，跳过")
            return False
        self._checking = True
        try:
            signature = self._current_signature()
            if signature is None or signature == self._signature:
                return False
            logger.info("检测到文件变化: %s", self.path)
            # 读取成功后才更新基准, 读取失败时下次检查会重试
            content = self.store.read(self.path)
            self._signature = signature
            await self.on_change(content)
            return True
        finally:
            self._checking = False

    async def run(self) -> None:
        await self.bootstrap()
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except OSError:
                logger.exception("读取文件失败: %s", self.path)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"watch:{self.path.name}")
            self._task.add_done_callback(self._log_exit)
        return self._task

    def _log_exit(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("文件监控异常退出: %s", self.path, exc_info=task.exception())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            # 已在 _log_exit 中记录
            pass
        self.watching = False
        logger.info("停止监控文件: %s", self.path)
