"""WebSocket 연결 풀 - URL별 단일 연결, 수신 루프, 하트비트, 장애 처리"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import websockets

from exchange_stream.errors import NetworkError, RequestTimeout
from exchange_stream.futures import FutureTable

if TYPE_CHECKING:
    from exchange_stream.config import Config
    from exchange_stream.registry import PendingRequest, Subscription

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]
MessageCallback = Callable[["Connection", Any], None]
CloseCallback = Callable[["Connection", Exception], None]


class ConnectionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Connection:
    """URL 하나에 대한 스트리밍 연결 (구독, 대기자, 인증 상태 보유)"""

    def __init__(self, url: str, on_message: MessageCallback, *,
                 ping: Callable[[], dict] | None = None,
                 ping_interval: float = 20.0, pong_timeout: float = 30.0,
                 decode: Callable[[Any], Any] = json.loads,
                 on_close: CloseCallback | None = None):
        self.url = url
        self.state = ConnectionState.CONNECTING
        self.futures = FutureTable()
        self.subscriptions: dict[str, Subscription] = {}         # topic → 구독
        self.pending_requests: dict[str, PendingRequest] = {}    # request id → ack 대기
        self.auth_future: asyncio.Future | None = None
        self.last_pong = 0.0
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self._ping = ping
        self._decode = decode
        self._on_message = on_message
        self._on_close = on_close
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    async def open(self, connector: Connector, timeout: float) -> None:
        """소켓 연결 후 수신 루프/하트비트 시작"""
        if self._ping is None:
            # 애플리케이션 ping이 없는 거래소는 프로토콜 ping 사용
            kwargs = {"ping_interval": self.ping_interval, "ping_timeout": self.pong_timeout}
        else:
            kwargs = {"ping_interval": None}
        self._ws = await asyncio.wait_for(connector(self.url, **kwargs), timeout)
        self.state = ConnectionState.OPEN
        self.last_pong = time.time()
        self._reader = asyncio.ensure_future(self._read_loop())
        if self._ping is not None:
            self._heartbeat = asyncio.ensure_future(self._heartbeat_loop())
        logger.info(f"[연결] {self.url} 연결 성공")

    async def send(self, message: dict) -> None:
        if not self.is_open:
            raise NetworkError(f"{self.url} 연결이 닫혀 있음")
        try:
            await self._ws.send(json.dumps(message))
        except Exception as e:
            error = NetworkError(f"{self.url} 전송 실패: {e}")
            self._fail(error)
            raise error from e

    async def _read_loop(self) -> None:
        """수신 순서대로 한 번에 하나씩 처리"""
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except Exception as e:
            logger.error(f"[연결] {self.url} 수신 오류: {e}")
            self._fail(NetworkError(f"{self.url} 연결 끊김: {e}"))
        else:
            self._fail(NetworkError(f"{self.url} 서버가 연결을 종료함"))

    def _dispatch(self, raw) -> None:
        try:
            message = self._decode(raw)
        except Exception as e:
            logger.warning(f"[연결] {self.url} 디코딩 실패, 무시: {e} raw={raw!r:.200}")
            return
        try:
            self._on_message(self, message)
        except Exception:
            # 메시지 하나의 실패로 연결을 끊지 않음
            logger.exception(f"[라우터] {self.url} 메시지 처리 실패, 무시")

    async def _heartbeat_loop(self) -> None:
        while self.is_open:
            await asyncio.sleep(self.ping_interval)
            if not self.is_open:
                return
            if time.time() - self.last_pong > self.pong_timeout:
                logger.warning(f"[연결] {self.url} pong 타임아웃 ({self.pong_timeout}초)")
                self._fail(RequestTimeout(f"{self.url} pong 응답 없음"))
                return
            try:
                await self.send(self._ping())
            except NetworkError:
                return

    def _fail(self, error: Exception) -> None:
        """연결 폐기: 모든 대기자 reject, 소켓 정리, 풀에 통보"""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        rejected = self.futures.reject(error)
        for request in self.pending_requests.values():
            request.cancel_timer()
            rejected += self.futures.reject_futures(error, request.waiters)
        self.pending_requests.clear()
        if self.auth_future is not None and not self.auth_future.done():
            self.auth_future.set_exception(error)
        self.subscriptions.clear()
        logger.warning(f"[연결] {self.url} 종료: {error} (대기자 {rejected}건 reject)")

        current = asyncio.current_task()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._ws is not None:
            asyncio.ensure_future(self._close_socket(self._ws))
        if self._on_close:
            self._on_close(self, error)

    @staticmethod
    async def _close_socket(ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[연결] 소켓 종료 중 오류 무시: {e}")

    async def close(self) -> None:
        """명시적 종료"""
        self._fail(NetworkError(f"{self.url} 연결 종료 요청"))


class ConnectionPool:
    """URL별 연결 하나를 유지, 동시 연결 요청은 진행 중인 연결을 공유"""

    def __init__(self, config: Config, on_message: MessageCallback,
                 connector: Connector | None = None, *,
                 ping: Callable[[], dict] | None = None,
                 decode: Callable[[Any], Any] = json.loads,
                 on_close: CloseCallback | None = None):
        self.config = config
        self.connector = connector or websockets.connect
        self._on_message = on_message
        self._ping = ping
        self._decode = decode
        self._on_close = on_close
        self._connections: dict[str, Connection] = {}
        self._connecting: dict[str, asyncio.Task] = {}

    def get(self, url: str) -> Connection | None:
        conn = self._connections.get(url)
        if conn is not None and conn.is_open:
            return conn
        return None

    async def ensure_connection(self, url: str) -> Connection:
        """열린 연결 반환, 없으면 연결 (진행 중인 연결 시도는 공유)"""
        conn = self.get(url)
        if conn is not None:
            return conn
        task = self._connecting.get(url)
        if task is None:
            task = asyncio.ensure_future(self._connect(url))
            self._connecting[url] = task
        return await asyncio.shield(task)

    async def _connect(self, url: str) -> Connection:
        attempts = max(1, self.config.max_connect_attempts)
        last_error: Exception | None = None
        try:
            for attempt in range(attempts):
                conn = Connection(
                    url, self._on_message,
                    ping=self._ping,
                    ping_interval=self.config.ping_interval,
                    pong_timeout=self.config.pong_timeout,
                    decode=self._decode,
                    on_close=self._handle_close,
                )
                try:
                    await conn.open(self.connector, self.config.connect_timeout)
                except Exception as e:
                    last_error = e
                    if attempt < attempts - 1:
                        delay = self.compute_reconnect_delay(attempt, self.config.reconnect_delay)
                        logger.error(
                            f"[연결] {url} 실패 ({attempt + 1}/{attempts}): {e}, {delay}초 후 재시도"
                        )
                        await asyncio.sleep(delay)
                    continue
                self._connections[url] = conn
                return conn
            raise NetworkError(f"{url} 연결 실패: {last_error}") from last_error
        finally:
            self._connecting.pop(url, None)

    def _handle_close(self, conn: Connection, error: Exception) -> None:
        if self._connections.get(conn.url) is conn:
            del self._connections[conn.url]
        if self._on_close:
            self._on_close(conn, error)

    async def close_all(self) -> None:
        for conn in list(self._connections.values()):
            await conn.close()

    @property
    def connections(self) -> dict[str, Connection]:
        return dict(self._connections)

    @staticmethod
    def compute_reconnect_delay(attempt: int, base: float = 1.0,
                                max_delay: float = 60.0) -> float:
        """지수 백오프 계산"""
        return min(base * 2 ** attempt, max_delay)
