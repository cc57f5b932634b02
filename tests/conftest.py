"""테스트 공용 가짜 WebSocket / 커넥터"""

import asyncio
import json

import pytest

_CLOSED = object()


class FakeWebSocket:
    """websockets 연결 대역 - 보낸 프레임 기록, push로 수신 메시지 주입"""

    def __init__(self, url: str):
        self.url = url
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(data))

    def push(self, message) -> None:
        raw = message if isinstance(message, str) else json.dumps(message)
        self._inbox.put_nowait(raw)

    def drop(self, error: Exception | None = None) -> None:
        """전송 계층 장애 주입"""
        self._inbox.put_nowait(error or ConnectionError("connection reset by peer"))

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def frames(self, key: str, value) -> list[dict]:
        return [m for m in self.sent if m.get(key) == value]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """websockets.connect 대역"""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.calls: list[tuple[str, dict]] = []
        self.failures = 0   # 앞으로 실패시킬 연결 시도 수

    async def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        await asyncio.sleep(0)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    async def wait_for_socket(self, index: int = 0) -> FakeWebSocket:
        for _ in range(200):
            if len(self.sockets) > index:
                return self.sockets[index]
            await asyncio.sleep(0)
        raise AssertionError(f"socket #{index} not opened")


async def settle(rounds: int = 10) -> None:
    """이벤트 루프에 대기 중인 콜백을 처리할 기회를 줌"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_sent(ws: FakeWebSocket, count: int) -> list[dict]:
    for _ in range(200):
        if len(ws.sent) >= count:
            return ws.sent
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} frames, got {ws.sent}")


@pytest.fixture
def connector():
    return FakeConnector()
