from __future__ import annotations

import json


class FakeConnection:
    """记录收到的每条消息的连接"""

    def __init__(self, name: str = "viewer") -> None:
        self.name = name
        self.sent: list[str] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    @property
    def events(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


class BrokenConnection(FakeConnection):
    """已断开的连接, 发送即失败"""

    async def send_text(self, data: str) -> None:
        raise ConnectionResetError("peer closed")


class FakeSocket:
    """按顺序吐出预设消息的客户端连接"""

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True

    def __iter__(self):
        return iter(self.messages)

    def close(self) -> None:
        self.closed = True
