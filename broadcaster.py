import json
import logging
from typing import Any, Dict, Protocol, Set

logger = logging.getLogger(__name__)

STATUS_UPDATE = "status-update"
TASK_ADDED = "task-added"


class ViewerConnection(Protocol):
    async def send_text(self, data: str) -> None: ...


def status_update_event(content: str) -> Dict[str, Any]:
    return {"type": STATUS_UPDATE, "content": content}


def task_added_event(task: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": TASK_ADDED, "task": task}


class ConnectionManager:
    """持有所有实时连接"""

    def __init__(self):
        self.connections: Set[ViewerConnection] = set()

    def __len__(self):
        return len(self.connections)

    def register(self, conn: ViewerConnection) -> None:
        self.connections.add(conn)
        logger.info("新的WebSocket连接, 当前连接数: %d", len(self.connections))

    def unregister(self, conn: ViewerConnection) -> None:
        if conn in self.connections:
            self.connections.discard(conn)
            logger.info("WebSocket连接关闭, 当前连接数: %d", len(self.connections))

    async def send(self, conn: ViewerConnection, event: Dict[str, Any]) -> bool:
        try:
            await conn.send_text(json.dumps(event, ensure_ascii=False))
        except Exception as e:
            logger.warning("发送消息失败, 移除连接: %s", e)
            self.unregister(conn)
            return False
        return True

    async def broadcast(self, event: Dict[str, Any]) -> int:
        """向所有连接广播一条事件, 发送失败的连接被移除, 返回成功发送数"""
        message = json.dumps(event, ensure_ascii=False)
        delivered = 0
        for conn in list(self.connections):
            try:
                await conn.send_text(message)
            except Exception as e:
                logger.warning("广播消息失败: %s", e)
                self.unregister(conn)
                continue
            delivered += 1
        logger.debug("广播 %s 到 %d 个连接", event.get("type"), delivered)
        return delivered
