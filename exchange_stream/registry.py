"""토픽 레지스트리 및 구독 프로토콜 - 중복 구독 방지, ack/에러 상관관계"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from exchange_stream.errors import NetworkError, RequestTimeout, UnsubscribedError

if TYPE_CHECKING:
    from exchange_stream.config import Config
    from exchange_stream.connection import Connection, ConnectionPool

logger = logging.getLogger(__name__)

FrameBuilder = Callable[[list[str], str], dict]


def message_hash(channel: str, symbol: str | None = None, *extra: str) -> str:
    """대기자 등록/resolve 공용 키: 'orderbook:BTC/USDT', 'ohlcv:BTC/USDT:1m', 'orders'"""
    parts = [channel]
    if symbol is not None:
        parts.append(symbol)
    parts.extend(extra)
    return ":".join(parts)


def multi_symbol_hash(channel: str, symbols: list[str]) -> str:
    """여러 심볼 필터 키: 'positions::BTC/USDT,ETH/USDT'"""
    return f"{channel}::{','.join(symbols)}"


def symbols_from_hash(hash_: str) -> list[str]:
    _, _, tail = hash_.partition("::")
    return tail.split(",") if tail else []


@dataclass
class Subscription:
    """연결 위의 와이어 구독 하나 (topic 단위)"""
    topic: str
    request_id: str
    message_hashes: list[str]
    acknowledged: bool = False


@dataclass
class PendingRequest:
    """ack를 기다리는 구독 요청 - 거부/타임아웃 시 이 요청의 대기자만 reject"""
    request_id: str
    topics: list[str]
    waiters: list[asyncio.Future] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass
class PendingCall:
    """구독 호출 하나가 등록한 대기자 묶음"""
    connection: Connection
    waiters: list[asyncio.Future]

    async def result(self):
        """등록한 hash 중 가장 먼저 resolve된 값"""
        try:
            if len(self.waiters) == 1:
                return await self.waiters[0]
            done, _ = await asyncio.wait(self.waiters, return_when=asyncio.FIRST_COMPLETED)
            return done.pop().result()
        finally:
            self.cancel()

    def cancel(self) -> None:
        for w in self.waiters:
            if not w.done():
                w.cancel()


class TopicRegistry:
    """구독 요청을 와이어 토픽으로 변환하고 중복 전송을 막음"""

    def __init__(self, pool: ConnectionPool, config: Config,
                 build_subscribe: FrameBuilder,
                 build_unsubscribe: Callable[[list[str], str], dict | None],
                 acknowledges: bool = True):
        self.pool = pool
        self.config = config
        self.build_subscribe = build_subscribe
        self.build_unsubscribe = build_unsubscribe
        self.acknowledges = acknowledges
        self._ids = itertools.count(1)

    def next_request_id(self) -> str:
        return str(next(self._ids))

    async def subscribe(self, url: str, message_hashes: list[str], topics: list[str],
                        authenticate: Callable[[Connection], Awaitable[Any]] | None = None):
        """구독 후 첫 resolve 값 반환"""
        call = await self.prepare(url, message_hashes, topics, authenticate)
        return await call.result()

    async def prepare(self, url: str, message_hashes: list[str], topics: list[str],
                      authenticate: Callable[[Connection], Awaitable[Any]] | None = None
                      ) -> PendingCall:
        """연결 확보, (필요 시) 인증, 대기자 등록, 미구독 토픽만 전송"""
        conn = await self.pool.ensure_connection(url)
        if authenticate is not None:
            await authenticate(conn)
        if not conn.is_open:
            raise NetworkError(f"{url} 연결이 닫혀 있음")

        waiters = [conn.futures.future(h) for h in message_hashes]
        call = PendingCall(conn, waiters)
        try:
            await self._ensure_topics(conn, message_hashes, topics, waiters)
        except BaseException:
            call.cancel()
            raise
        return call

    async def _ensure_topics(self, conn: Connection, message_hashes: list[str],
                             topics: list[str], waiters: list[asyncio.Future]) -> None:
        # ack 전인 기존 요청에 합류 → 그 요청이 거부되면 함께 reject
        joined: set[str] = set()
        for topic in topics:
            sub = conn.subscriptions.get(topic)
            if sub is None or sub.acknowledged or sub.request_id in joined:
                continue
            request = conn.pending_requests.get(sub.request_id)
            if request is not None:
                request.waiters.extend(waiters)
                joined.add(sub.request_id)

        missing = [t for t in topics if t not in conn.subscriptions]
        if not missing:
            return

        request_id = self.next_request_id()
        for topic in missing:
            conn.subscriptions[topic] = Subscription(
                topic=topic,
                request_id=request_id,
                message_hashes=list(message_hashes),
                acknowledged=not self.acknowledges,
            )
        if self.acknowledges:
            request = PendingRequest(request_id, missing, list(waiters))
            request.timer = asyncio.get_running_loop().call_later(
                self.config.subscribe_timeout, self._expire, conn, request_id
            )
            conn.pending_requests[request_id] = request

        logger.info(f"[구독] {conn.url} {missing} (id={request_id})")
        await conn.send(self.build_subscribe(missing, request_id))

    def acknowledge(self, conn: Connection, request_id: str | None) -> bool:
        """구독 ack 처리"""
        request = conn.pending_requests.pop(str(request_id), None)
        if request is None:
            return False
        request.cancel_timer()
        for topic in request.topics:
            sub = conn.subscriptions.get(topic)
            if sub is not None and sub.request_id == request.request_id:
                sub.acknowledged = True
        logger.debug(f"[구독] ack id={request_id} {request.topics}")
        return True

    def reject_request(self, conn: Connection, request_id: str | None,
                       error: Exception) -> bool:
        """구독 거부: 해당 요청 대기자만 reject, 토픽은 재시도 가능하도록 제거"""
        request = conn.pending_requests.pop(str(request_id), None)
        if request is None:
            return False
        request.cancel_timer()
        self._drop_topics(conn, request)
        count = conn.futures.reject_futures(error, request.waiters)
        logger.warning(f"[구독] 거부 id={request_id} {request.topics}: {error} (대기자 {count}건)")
        return True

    def _expire(self, conn: Connection, request_id: str) -> None:
        error = RequestTimeout(
            f"{conn.url} 구독 응답 없음 (id={request_id}, {self.config.subscribe_timeout}초)"
        )
        self.reject_request(conn, request_id, error)

    @staticmethod
    def _drop_topics(conn: Connection, request: PendingRequest) -> None:
        for topic in request.topics:
            sub = conn.subscriptions.get(topic)
            if sub is not None and sub.request_id == request.request_id:
                del conn.subscriptions[topic]

    async def unsubscribe(self, url: str, topics: list[str], message_hashes: list[str]) -> bool:
        """구독 해제: 대기자는 UnsubscribedError로 reject"""
        conn = self.pool.get(url)
        if conn is None:
            return False
        present = [t for t in topics if t in conn.subscriptions]
        for topic in present:
            sub = conn.subscriptions.pop(topic)
            request = conn.pending_requests.get(sub.request_id)
            if request is not None and topic in request.topics:
                request.topics.remove(topic)
                if not request.topics:
                    request.cancel_timer()
                    del conn.pending_requests[sub.request_id]
        for h in message_hashes:
            conn.futures.reject(UnsubscribedError(f"{h} 구독 해제됨"), h)
        if present:
            frame = self.build_unsubscribe(present, self.next_request_id())
            if frame is not None:
                logger.info(f"[구독] 해제 {conn.url} {present}")
                await conn.send(frame)
        return bool(present)

    async def resubscribe(self, conn: Connection, topics: list[str]) -> None:
        """스냅샷 재요청용 재구독 (대기자 등록 없음)"""
        frame = self.build_unsubscribe(topics, self.next_request_id())
        if frame is not None:
            await conn.send(frame)
        request_id = self.next_request_id()
        for topic in topics:
            sub = conn.subscriptions.get(topic)
            if sub is not None:
                sub.request_id = request_id
                sub.acknowledged = True
        logger.info(f"[구독] 재구독 {conn.url} {topics} (id={request_id})")
        await conn.send(self.build_subscribe(topics, request_id))
