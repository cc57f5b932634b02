"""스트리밍 세션 모듈 - 거래소 하나에 대한 watch_* 진입점

연결 풀, 토픽 레지스트리, 인증, 라우터, 캐시를 하나의 이벤트 루프 위에서 묶는다.
모든 상태 변경은 수신 루프(단일 writer)에서만 일어나고 watch_* 호출자는 읽기만 한다.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import fields, replace
from typing import TYPE_CHECKING

from exchange_stream.auth import Authenticator
from exchange_stream.bootstrap import SnapshotBootstrap
from exchange_stream.cache import (
    ArrayCache,
    ArrayCacheBySymbolById,
    ArrayCacheBySymbolBySide,
    ArrayCacheByTimestamp,
    BalanceBook,
    filter_by_since_limit,
)
from exchange_stream.config import Config
from exchange_stream.connection import ConnectionPool
from exchange_stream.errors import BadRequest, ExchangeError, ExchangeStreamError, RequestTimeout
from exchange_stream.models import ChannelKind, Ticker
from exchange_stream.orderbook import ApplyResult, OrderBookReconstructor
from exchange_stream.registry import (
    TopicRegistry,
    message_hash,
    multi_symbol_hash,
    symbols_from_hash,
)
from exchange_stream.rest import RestClient
from exchange_stream.router import DispatchRouter

if TYPE_CHECKING:
    from exchange_stream.adapters.base import ExchangeAdapter
    from exchange_stream.connection import Connection, Connector
    from exchange_stream.integrity_logger import IntegrityLogger
    from exchange_stream.models import (
        BalanceEntry,
        BookUpdate,
        Candle,
        MyTrade,
        Order,
        OrderBookSnapshot,
        Position,
        Trade,
    )

logger = logging.getLogger(__name__)


class StreamSession:
    """거래소 스트리밍 세션"""

    def __init__(self, adapter: ExchangeAdapter, config: Config | None = None,
                 connector: Connector | None = None, rest: RestClient | None = None,
                 integrity_logger: IntegrityLogger | None = None):
        self.adapter = adapter
        self.config = config or Config()
        self.rest = rest or RestClient(self.config.rest_timeout, self.config.rest_max_retries)
        self.integrity_logger = integrity_logger

        self.pool = ConnectionPool(
            self.config, self._on_message, connector,
            ping=self._build_ping if adapter.app_level_ping else None,
            decode=adapter.decode,
            on_close=self._on_connection_closed,
        )
        self.registry = TopicRegistry(
            self.pool, self.config,
            adapter.build_subscribe, adapter.build_unsubscribe,
            adapter.acknowledges_subscriptions,
        )
        self.authenticator = Authenticator(adapter, self.config)
        self.router = DispatchRouter(adapter, self.registry, self.authenticator, integrity_logger)
        self.router.register(ChannelKind.TICKER, self._handle_ticker)
        self.router.register(ChannelKind.ORDER_BOOK, self._handle_order_book)
        self.router.register(ChannelKind.TRADES, self._handle_trades)
        self.router.register(ChannelKind.OHLCV, self._handle_ohlcv)
        self.router.register(ChannelKind.ORDERS, self._handle_orders)
        self.router.register(ChannelKind.MY_TRADES, self._handle_my_trades)
        self.router.register(ChannelKind.POSITIONS, self._handle_positions)
        self.router.register(ChannelKind.BALANCE, self._handle_balance)
        self.bootstrap = SnapshotBootstrap()

        # 로컬 상태 (수신 루프만 변경)
        self.books = OrderBookReconstructor(
            gap_tolerance=self.config.orderbook_gap_tolerance,
            max_buffered_deltas=self.config.max_buffered_deltas,
            integrity_logger=integrity_logger,
        )
        self.tickers: dict[str, Ticker] = {}
        self.trades: dict[str, ArrayCache] = {}
        self.ohlcvs: dict[str, dict[str, ArrayCacheByTimestamp]] = {}
        self.orders = ArrayCacheBySymbolById(self.config.orders_limit)
        self.my_trades = ArrayCacheBySymbolById(self.config.trades_limit)
        self.positions = ArrayCacheBySymbolBySide(self.config.positions_limit)
        self.balance = BalanceBook(self.config.balance_limit)

        self._book_urls: dict[str, str] = {}      # symbol → 오더북 구독 URL
        self._book_topics: dict[str, str] = {}    # symbol → 오더북 토픽
        self._private_urls: set[str] = set()
        self._resyncing: dict[str, tuple[Connection, asyncio.Task]] = {}
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> StreamSession:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── 공개 채널 ──

    async def watch_ticker(self, symbol: str) -> Ticker:
        """다음 티커 업데이트"""
        self.adapter.require(ChannelKind.TICKER)
        topic = self.adapter.ticker_topic(self.adapter.markets.market_id(symbol))
        return await self.registry.subscribe(
            self.adapter.public_url(), [message_hash("ticker", symbol)], [topic]
        )

    async def watch_tickers(self, symbols: list[str]) -> dict[str, Ticker]:
        """여러 심볼 중 하나라도 업데이트되면 현재 티커 뷰 반환"""
        self.adapter.require(ChannelKind.TICKER)
        if not symbols:
            raise BadRequest("watch_tickers: symbols 필요")
        topics = [self.adapter.ticker_topic(self.adapter.markets.market_id(s)) for s in symbols]
        await self.registry.subscribe(
            self.adapter.public_url(), [multi_symbol_hash("tickers", symbols)], topics
        )
        return {s: self.tickers[s] for s in symbols if s in self.tickers}

    async def watch_order_book(self, symbol: str, limit: int | None = None) -> OrderBookSnapshot:
        """동기화된 오더북의 상위 limit 호가"""
        return await self.watch_order_book_for_symbols([symbol], limit)

    async def watch_order_book_for_symbols(self, symbols: list[str],
                                           limit: int | None = None) -> OrderBookSnapshot:
        """여러 심볼 중 가장 먼저 갱신된 오더북의 상위 limit 호가"""
        self.adapter.require(ChannelKind.ORDER_BOOK)
        if not symbols:
            raise BadRequest("watch_order_book_for_symbols: symbols 필요")
        url = self.adapter.public_url()
        depth = self.config.orderbook_depth
        topics = [self.adapter.order_book_topic(self.adapter.markets.market_id(s), depth)
                  for s in symbols]
        for symbol, topic in zip(symbols, topics):
            self._book_urls[symbol] = url
            self._book_topics[symbol] = topic
        call = await self.registry.prepare(
            url, [message_hash("orderbook", s) for s in symbols], topics
        )
        for symbol in symbols:
            st = self.books.state(symbol)
            if st.initialized:
                continue
            if self.adapter.order_book_snapshot_via_rest:
                # 구독 후 스냅샷 요청 → 그 사이 델타는 버퍼에 쌓임
                self._request_snapshot(call.connection, symbol, initial=True)
            elif st.resync_failed:
                # 구독은 살아 있지만 스냅샷이 없어 델타만 쌓이는 상태
                st.resync_failed = False
                self._request_snapshot(call.connection, symbol)
        book = await call.result()
        return book.limit(limit)

    async def watch_trades(self, symbol: str, since: int | None = None,
                           limit: int | None = None) -> list[Trade]:
        return await self.watch_trades_for_symbols([symbol], since, limit)

    async def watch_trades_for_symbols(self, symbols: list[str], since: int | None = None,
                                       limit: int | None = None) -> list[Trade]:
        """여러 심볼 중 가장 먼저 체결이 들어온 심볼의 체결 목록"""
        self.adapter.require(ChannelKind.TRADES)
        if not symbols:
            raise BadRequest("watch_trades_for_symbols: symbols 필요")
        topics = [self.adapter.trades_topic(self.adapter.markets.market_id(s)) for s in symbols]
        cache = await self.registry.subscribe(
            self.adapter.public_url(), [message_hash("trades", s) for s in symbols], topics
        )
        return filter_by_since_limit(cache.to_list(), since, limit)

    async def watch_ohlcv(self, symbol: str, timeframe: str | None = None,
                          since: int | None = None, limit: int | None = None) -> list[Candle]:
        self.adapter.require(ChannelKind.OHLCV)
        timeframe = timeframe or self.config.timeframe
        interval = self.adapter.timeframe_id(timeframe)
        topic = self.adapter.ohlcv_topic(self.adapter.markets.market_id(symbol), interval)
        cache = await self.registry.subscribe(
            self.adapter.public_url(), [message_hash("ohlcv", symbol, timeframe)], [topic]
        )
        return filter_by_since_limit(cache.to_list(), since, limit)

    # ── private 채널 ──

    def _private_url(self) -> str:
        url = self.adapter.private_url()
        self.authenticator.check_credentials()
        self._private_urls.add(url)
        return url

    async def watch_orders(self, symbol: str | None = None, since: int | None = None,
                           limit: int | None = None) -> list[Order]:
        self.adapter.require(ChannelKind.ORDERS)
        url = self._private_url()
        if symbol is not None:
            self.adapter.markets.market_id(symbol)
        await self.registry.subscribe(
            url, [message_hash("orders", symbol)], [self.adapter.orders_topic()],
            authenticate=self.authenticator.authenticate,
        )
        return filter_by_since_limit(self.orders.to_list(symbol), since, limit)

    async def watch_my_trades(self, symbol: str | None = None, since: int | None = None,
                              limit: int | None = None) -> list[MyTrade]:
        """내 체결 - (symbol, execution id) 단위로 중복 없이 누적"""
        self.adapter.require(ChannelKind.MY_TRADES)
        url = self._private_url()
        if symbol is not None:
            self.adapter.markets.market_id(symbol)
        await self.registry.subscribe(
            url, [message_hash("myTrades", symbol)], [self.adapter.my_trades_topic()],
            authenticate=self.authenticator.authenticate,
        )
        return filter_by_since_limit(self.my_trades.to_list(symbol), since, limit)

    async def watch_positions(self, symbols: list[str] | None = None, since: int | None = None,
                              limit: int | None = None) -> list[Position]:
        """첫 호출은 REST 스냅샷을 병합해 반환, 이후는 push 업데이트 대기"""
        self.adapter.require(ChannelKind.POSITIONS)
        url = self._private_url()
        for symbol in symbols or []:
            self.adapter.markets.market_id(symbol)
        h = multi_symbol_hash("positions", symbols) if symbols else "positions"
        call = await self.registry.prepare(
            url, [h], [self.adapter.positions_topic()],
            authenticate=self.authenticator.authenticate,
        )
        if self.adapter.has_positions_snapshot and not self.bootstrap.is_loaded("positions"):
            try:
                await self.bootstrap.load("positions", self._fetch_positions, self.positions.upsert)
            finally:
                call.cancel()
        else:
            await call.result()
        items = self.positions.to_list()
        if symbols:
            items = [p for p in items if p.symbol in symbols]
        return filter_by_since_limit(items, since, limit)

    async def watch_balance(self) -> dict[str, BalanceEntry]:
        self.adapter.require(ChannelKind.BALANCE)
        url = self._private_url()
        call = await self.registry.prepare(
            url, ["balance"], [self.adapter.balance_topic()],
            authenticate=self.authenticator.authenticate,
        )
        if self.adapter.has_balance_snapshot and not self.bootstrap.is_loaded("balance"):
            try:
                await self.bootstrap.load("balance", self._fetch_balance, self.balance.update)
            finally:
                call.cancel()
        else:
            await call.result()
        return self.balance.to_dict()

    async def _fetch_positions(self) -> list[Position]:
        return await self.adapter.fetch_positions_snapshot(
            self.rest, self.config.api_key, self.config.secret
        )

    async def _fetch_balance(self) -> list[BalanceEntry]:
        return await self.adapter.fetch_balance_snapshot(
            self.rest, self.config.api_key, self.config.secret
        )

    # ── 구독 해제 ──

    async def unwatch_order_book(self, symbol: str) -> bool:
        url = self._book_urls.pop(symbol, None)
        topic = self._book_topics.pop(symbol, None)
        self.books.evict(symbol)
        if url is None:
            return False
        return await self.registry.unsubscribe(url, [topic], [message_hash("orderbook", symbol)])

    async def unwatch_trades(self, symbol: str) -> bool:
        topic = self.adapter.trades_topic(self.adapter.markets.market_id(symbol))
        self.trades.pop(symbol, None)
        return await self.registry.unsubscribe(
            self.adapter.public_url(), [topic], [message_hash("trades", symbol)]
        )

    async def unwatch_ticker(self, symbol: str) -> bool:
        url = self.adapter.public_url()
        topic = self.adapter.ticker_topic(self.adapter.markets.market_id(symbol))
        hashes = [message_hash("ticker", symbol)]
        conn = self.pool.get(url)
        if conn is not None:
            hashes += [h for h in conn.futures.find_message_hashes("tickers::")
                       if symbol in symbols_from_hash(h)]
        self.tickers.pop(symbol, None)
        return await self.registry.unsubscribe(url, [topic], hashes)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.pool.close_all()
        logger.info(f"[세션] {self.adapter.name} 종료")

    # ── 수신 처리 (단일 writer) ──

    def _on_message(self, connection: Connection, message) -> None:
        self.router.route(connection, message)

    def _build_ping(self) -> dict:
        return self.adapter.build_ping(self.registry.next_request_id())

    def _handle_ticker(self, conn: Connection, message) -> None:
        updated: dict[str, Ticker] = {}
        for ticker in self.adapter.parse_ticker(message):
            ticker = self._merge_ticker(self.tickers.get(ticker.symbol), ticker)
            self.tickers[ticker.symbol] = ticker
            updated[ticker.symbol] = ticker
            conn.futures.resolve(ticker, message_hash("ticker", ticker.symbol))
        for h in conn.futures.find_message_hashes("tickers::"):
            hits = {s: t for s, t in updated.items() if s in symbols_from_hash(h)}
            if hits:
                conn.futures.resolve(hits, h)

    @staticmethod
    def _merge_ticker(current: Ticker | None, update: Ticker) -> Ticker:
        """부분 업데이트(delta)는 기존 값 위에 덮어씀"""
        if current is None:
            return update
        values = {
            f.name: getattr(update, f.name) for f in fields(Ticker)
            if f.name != "info" and getattr(update, f.name) is not None
        }
        return replace(current, info={**current.info, **update.info}, **values)

    def _handle_order_book(self, conn: Connection, message) -> None:
        for update in self.adapter.parse_order_book(message):
            if update.symbol not in self._book_urls:
                continue
            self._apply_book_update(conn, update)

    def _apply_book_update(self, conn: Connection, update: BookUpdate) -> None:
        symbol = update.symbol
        result = self.books.apply(update)
        if result is ApplyResult.APPLIED:
            conn.futures.resolve(self.books.book(symbol), message_hash("orderbook", symbol))
        elif result in (ApplyResult.GAP, ApplyResult.CROSSED):
            self._request_snapshot(conn, symbol)

    def _handle_trades(self, conn: Connection, message) -> None:
        touched = set()
        for trade in self.adapter.parse_trades(message):
            cache = self.trades.get(trade.symbol)
            if cache is None:
                cache = self.trades[trade.symbol] = ArrayCache(self.config.trades_limit)
            cache.append(trade)
            touched.add(trade.symbol)
        for symbol in touched:
            conn.futures.resolve(self.trades[symbol], message_hash("trades", symbol))

    def _handle_ohlcv(self, conn: Connection, message) -> None:
        touched = set()
        for symbol, timeframe, candle in self.adapter.parse_ohlcv(message):
            by_tf = self.ohlcvs.setdefault(symbol, {})
            cache = by_tf.get(timeframe)
            if cache is None:
                cache = by_tf[timeframe] = ArrayCacheByTimestamp(self.config.ohlcv_limit)
            if cache.append(candle):
                touched.add((symbol, timeframe))
        for symbol, timeframe in touched:
            conn.futures.resolve(self.ohlcvs[symbol][timeframe],
                                 message_hash("ohlcv", symbol, timeframe))

    def _handle_orders(self, conn: Connection, message) -> None:
        symbols = set()
        for order in self.adapter.parse_orders(message):
            self.orders.upsert(order)
            symbols.add(order.symbol)
        if not symbols:
            return
        conn.futures.resolve(self.orders, "orders")
        for symbol in symbols:
            conn.futures.resolve(self.orders, message_hash("orders", symbol))

    def _handle_my_trades(self, conn: Connection, message) -> None:
        symbols = set()
        for trade in self.adapter.parse_my_trades(message):
            self.my_trades.upsert(trade)
            symbols.add(trade.symbol)
        if not symbols:
            return
        conn.futures.resolve(self.my_trades, "myTrades")
        for symbol in symbols:
            conn.futures.resolve(self.my_trades, message_hash("myTrades", symbol))

    def _handle_positions(self, conn: Connection, message) -> None:
        updated = []
        for position in self.adapter.parse_positions(message):
            if self.bootstrap.defer("positions", position):
                continue
            if self.positions.upsert(position):
                updated.append(position)
        if not updated:
            return
        conn.futures.resolve(updated, "positions")
        symbols = {p.symbol for p in updated}
        for h in conn.futures.find_message_hashes("positions::"):
            if symbols.intersection(symbols_from_hash(h)):
                conn.futures.resolve(updated, h)

    def _handle_balance(self, conn: Connection, message) -> None:
        changed = False
        for entry in self.adapter.parse_balance(message):
            if self.bootstrap.defer("balance", entry):
                continue
            self.balance.update(entry)
            changed = True
        if changed:
            conn.futures.resolve(self.balance, "balance")

    # ── 오더북 재동기화 ──

    def _request_snapshot(self, conn: Connection, symbol: str, initial: bool = False) -> None:
        current = self._resyncing.get(symbol)
        if current is not None:
            owner, task = current
            if owner is conn and not task.done():
                return
            # 끊긴 연결의 재동기화는 폐기
            task.cancel()
        task = self._spawn(self._resync_order_book(conn, symbol, initial))
        self._resyncing[symbol] = (conn, task)

    async def _resync_order_book(self, conn: Connection, symbol: str, initial: bool) -> None:
        """스냅샷을 다시 받아 STREAMING 상태로 복구, 반복 실패 시 대기자에 에러 전달"""
        max_attempts = self.config.max_resync_attempts
        try:
            while conn.is_open and symbol in self._book_urls:
                st = self.books.state(symbol)
                if st.initialized:
                    if not initial:
                        self._record_resync(symbol, "succeeded")
                    return
                if st.resync_attempts >= max_attempts:
                    error = ExchangeError(f"{symbol} 오더북 동기화 {st.resync_attempts}회 실패")
                    st.resync_attempts = 0
                    st.resync_failed = True
                    self._record_resync(symbol, "failed")
                    conn.futures.reject(error, message_hash("orderbook", symbol))
                    return
                st.resync_attempts += 1
                if not initial:
                    self._record_resync(symbol, "requested")
                try:
                    await self._load_book_snapshot(conn, symbol)
                except ExchangeStreamError as e:
                    logger.warning(
                        f"[재동기화] {symbol} 스냅샷 실패 ({st.resync_attempts}/{max_attempts}): {e}"
                    )
                    await asyncio.sleep(ConnectionPool.compute_reconnect_delay(
                        st.resync_attempts - 1, self.config.reconnect_delay
                    ))
        finally:
            current = self._resyncing.get(symbol)
            if current is not None and current[1] is asyncio.current_task():
                del self._resyncing[symbol]

    async def _load_book_snapshot(self, conn: Connection, symbol: str) -> None:
        if self.adapter.order_book_snapshot_via_rest:
            snapshot = await self.adapter.fetch_order_book_snapshot(
                self.rest, symbol, self.config.orderbook_depth
            )
            if conn.is_open and symbol in self._book_urls:
                self.books.apply_snapshot(snapshot)
                book = self.books.book(symbol)
                if book is not None:
                    conn.futures.resolve(book, message_hash("orderbook", symbol))
            return
        # 재구독하면 거래소가 스냅샷을 다시 보냄
        waiter = conn.futures.future(message_hash("orderbook", symbol))
        try:
            await self.registry.resubscribe(conn, [self._book_topics[symbol]])
            await asyncio.wait_for(waiter, self.config.subscribe_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(f"{symbol} 스냅샷 수신 없음 ({self.config.subscribe_timeout}초)") from None
        finally:
            if not waiter.done():
                waiter.cancel()

    def _record_resync(self, symbol: str, status: str) -> None:
        if self.integrity_logger:
            self.integrity_logger.record_resync(symbol, status, time.time())
        elif status == "failed":
            logger.error(f"[재동기화] {symbol} 실패")

    # ── 연결 종료 ──

    def _on_connection_closed(self, conn: Connection, error: Exception) -> None:
        """연결 하나의 상태만 폐기, 다음 watch_* 호출이 재연결/재구독"""
        if self.integrity_logger:
            self.integrity_logger.record_reconnect(conn.url, time.time(), str(error))
        for symbol, url in list(self._book_urls.items()):
            if url == conn.url:
                self.books.invalidate(symbol, "연결 종료")
        if conn.url in self._private_urls:
            self.bootstrap.reset()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
