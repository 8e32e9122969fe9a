"""订阅服务端 /ws 实时推送, 供 Streamlit 状态页使用

后台线程保持连接, 断开后每隔 reconnect_delay 秒重连。收到的 status-update 和
task-added 事件写入 LiveFeedState, 页面定时读取快照刷新。
"""

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from broadcaster import STATUS_UPDATE, TASK_ADDED

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 5
OPEN_TIMEOUT_SECONDS = 10


def ws_url(api_url: str) -> str:
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + "/ws"


class LiveFeedState:
    def __init__(self, max_tasks: int = 20):
        self._lock = threading.Lock()
        self.connected = False
        self.status: Optional[str] = None
        self.recent_tasks: deque = deque(maxlen=max_tasks)
        self.updated_at: Optional[float] = None
        self.version = 0

    def apply(self, event: Dict[str, Any]) -> bool:
        kind = event.get("type")
        with self._lock:
            if kind == STATUS_UPDATE:
                self.status = event.get("content") or ""
            elif kind == TASK_ADDED:
                self.recent_tasks.appendleft(event.get("task") or {})
            else:
                return False
            self.version += 1
            self.updated_at = time.time()
        return True

    def set_connected(self, connected: bool) -> None:
        with self._lock:
            self.connected = connected

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "connected": self.connected,
                "status": self.status,
                "recent_tasks": list(self.recent_tasks),
                "updated_at": self.updated_at,
                "version": self.version,
            }


class LiveFeedClient:
    def __init__(self, url: str, state: LiveFeedState,
                 reconnect_delay: float = RECONNECT_DELAY_SECONDS,
                 connect_fn: Callable = connect):
        self.url = url
        self.state = state
        self.reconnect_delay = reconnect_delay
        self.connect_fn = connect_fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ws = None

    def handle_message(self, raw) -> bool:
        try:
            event = json.loads(raw)
        except ValueError:
            logger.warning("解析WebSocket消息失败: %r", raw)
            return False
        if not isinstance(event, dict):
            return False
        return self.state.apply(event)

    def run_once(self) -> None:
        with self.connect_fn(self.url, open_timeout=OPEN_TIMEOUT_SECONDS) as ws:
            self._ws = ws
            self.state.set_connected(True)
            logger.info("已连接到智能体: %s", self.url)
            try:
                for raw in ws:
                    if self._stop.is_set():
                        break
                    self.handle_message(raw)
            finally:
                self._ws = None

    def run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
                logger.info("与智能体连接断开: %s", self.url)
            except (OSError, TimeoutError, WebSocketException) as e:
                logger.warning("WebSocket连接失败: %s", e)
            finally:
                self.state.set_connected(False)
            if self._stop.wait(self.reconnect_delay):
                break

    def start(self) -> threading.Thread:
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self.run, name="live-feed", daemon=True)
            self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            ws.close()
