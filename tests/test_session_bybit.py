"""StreamSession 통합 테스트 (Bybit)
Feature: exchange-stream
중복 구독 방지, 인증 공유, 구독 거부/타임아웃, 오더북 재동기화, 연결 장애 처리
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import settle, wait_sent
from exchange_stream.adapters.bybit import BybitAdapter
from exchange_stream.config import Config
from exchange_stream.errors import (
    AuthenticationError,
    BadRequest,
    ExchangeError,
    NetworkError,
    RequestTimeout,
    UnsubscribedError,
)
from exchange_stream.integrity_logger import IntegrityLogger
from exchange_stream.session import StreamSession

PUBLIC_URL = "wss://stream.bybit.com/v5/public/spot"


def make_session(connector, integrity_logger=None, rest=None, **overrides):
    params = dict(api_key="k", secret="s", subscribe_timeout=1.0, auth_timeout=1.0,
                  reconnect_delay=0, ping_interval=60)
    params.update(overrides)
    adapter = BybitAdapter("spot", {"BTC/USDT": "BTCUSDT", "ETH/USDT": "ETHUSDT"})
    return StreamSession(adapter, Config(**params), connector=connector,
                         rest=rest or MagicMock(), integrity_logger=integrity_logger)


def ack(frame: dict) -> dict:
    return {"success": True, "ret_msg": "", "conn_id": "c", "req_id": frame["req_id"],
            "op": frame["op"]}


def book_msg(kind: str, u: int, bids=None, asks=None) -> dict:
    return {"topic": "orderbook.50.BTCUSDT", "type": kind, "ts": 1700000000000 + u,
            "data": {"s": "BTCUSDT", "b": bids or [], "a": asks or [], "u": u, "seq": u}}


def ticker_msg(symbol_id: str = "BTCUSDT", last: str = "100") -> dict:
    return {"topic": f"tickers.{symbol_id}", "type": "snapshot", "ts": 1700000000000,
            "data": {"symbol": symbol_id, "lastPrice": last}}


AUTH_OK = {"success": True, "ret_msg": "", "op": "auth", "conn_id": "c"}
AUTH_FAIL = {"success": False, "ret_msg": "error:USVC1111", "op": "auth", "conn_id": "c"}


# ── 구독 ──

class TestSubscription:

    def test_concurrent_watch_sends_one_subscribe(self, connector):
        """같은 토픽 동시 구독은 프레임 1회, 두 호출 모두 같은 스냅샷 수신"""
        async def run():
            session = make_session(connector)
            t1 = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            t2 = asyncio.ensure_future(session.watch_order_book("BTC/USDT", limit=1))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            await settle()
            subs = ws.frames("op", "subscribe")
            assert len(subs) == 1
            assert subs[0]["args"] == ["orderbook.50.BTCUSDT"]

            ws.push(ack(subs[0]))
            ws.push(book_msg("snapshot", 10, bids=[["100.0", "1.0"], ["99.0", "1.0"]],
                             asks=[["101.0", "1.0"]]))
            b1, b2 = await asyncio.gather(t1, t2)
            await session.close()
            return b1, b2, len(connector.calls)

        b1, b2, calls = asyncio.run(run())
        assert calls == 1
        assert b1.nonce == b2.nonce == 10
        assert b1.bids == [[100.0, 1.0], [99.0, 1.0]]
        assert b2.bids == [[100.0, 1.0]]

    def test_rejected_subscribe_isolated(self, connector):
        """거부된 요청의 대기자만 실패, 다른 구독은 계속 동작"""
        async def run():
            session = make_session(connector)
            t_ticker = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            t_trades = asyncio.ensure_future(session.watch_trades("BTC/USDT"))
            await wait_sent(ws, 2)
            sub_ticker, sub_trades = ws.frames("op", "subscribe")
            assert sub_trades["args"] == ["publicTrade.BTCUSDT"]

            ws.push(ack(sub_ticker))
            ws.push({"success": False, "ret_msg": "error:handler not found",
                     "conn_id": "c", "req_id": sub_trades["req_id"], "op": "subscribe"})
            with pytest.raises(BadRequest):
                await t_trades
            assert not t_ticker.done()

            ws.push(ticker_msg(last="42000"))
            ticker = await t_ticker
            conn = session.pool.get(PUBLIC_URL)
            topics = set(conn.subscriptions)
            await session.close()
            return ticker, topics

        ticker, topics = asyncio.run(run())
        assert ticker.last == 42000.0
        assert topics == {"tickers.BTCUSDT"}

    def test_subscribe_timeout(self, connector):
        async def run():
            session = make_session(connector, subscribe_timeout=0.05)
            with pytest.raises(RequestTimeout):
                await session.watch_ticker("BTC/USDT")
            conn = session.pool.get(PUBLIC_URL)
            remaining = dict(conn.subscriptions)
            await session.close()
            return remaining

        assert asyncio.run(run()) == {}

    def test_watch_tickers_partial_update(self, connector):
        """여러 심볼 구독은 하나만 갱신돼도 resolve"""
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_tickers(["BTC/USDT", "ETH/USDT"]))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            assert ws.sent[0]["args"] == ["tickers.BTCUSDT", "tickers.ETHUSDT"]
            ws.push(ticker_msg("ETHUSDT", "2000"))
            result = await t
            await session.close()
            return result

        result = asyncio.run(run())
        assert list(result) == ["ETH/USDT"]
        assert result["ETH/USDT"].last == 2000.0

    def test_ticker_delta_merged(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push({"topic": "tickers.BTCUSDT", "type": "snapshot", "ts": 1,
                     "data": {"symbol": "BTCUSDT", "lastPrice": "100", "highPrice24h": "110"}})
            await t
            t = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            await settle()
            ws.push({"topic": "tickers.BTCUSDT", "type": "delta", "ts": 2,
                     "data": {"symbol": "BTCUSDT", "lastPrice": "101"}})
            ticker = await t
            await session.close()
            return ticker

        ticker = asyncio.run(run())
        assert (ticker.last, ticker.high, ticker.timestamp) == (101.0, 110.0, 2)

    def test_ohlcv_and_unwatch_trades(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_ohlcv("BTC/USDT", "1h"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            assert ws.sent[0]["args"] == ["kline.60.BTCUSDT"]
            ws.push({"topic": "kline.60.BTCUSDT", "type": "snapshot", "ts": 1, "data": [{
                "start": 3600000, "end": 7199999, "interval": "60", "open": "1", "high": "2",
                "low": "0.5", "close": "1.5", "volume": "10", "confirm": False,
            }]})
            candles = await t

            trades = asyncio.ensure_future(session.watch_trades("BTC/USDT"))
            await wait_sent(ws, 2)
            assert await session.unwatch_trades("BTC/USDT") is True
            with pytest.raises(UnsubscribedError):
                await trades
            unsub = ws.frames("op", "unsubscribe")
            await session.close()
            return candles, unsub

        candles, unsub = asyncio.run(run())
        assert [c.timestamp for c in candles] == [3600000]
        assert unsub[0]["args"] == ["publicTrade.BTCUSDT"]

    def test_watch_trades_for_symbols(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(
                session.watch_trades_for_symbols(["BTC/USDT", "ETH/USDT"], limit=2)
            )
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(ack(ws.sent[0]))
            ws.push({"topic": "publicTrade.ETHUSDT", "type": "snapshot", "ts": 1, "data": [
                {"T": 1, "s": "ETHUSDT", "S": "Buy", "v": "1", "p": "2000", "i": "a"},
                {"T": 2, "s": "ETHUSDT", "S": "Sell", "v": "2", "p": "2001", "i": "b"},
                {"T": 3, "s": "ETHUSDT", "S": "Buy", "v": "3", "p": "2002", "i": "c"},
            ]})
            trades = await t

            # 이미 구독된 토픽은 다시 보내지 않음
            t = asyncio.ensure_future(session.watch_trades("BTC/USDT"))
            await settle()
            ws.push({"topic": "publicTrade.BTCUSDT", "type": "snapshot", "ts": 4, "data": [
                {"T": 4, "s": "BTCUSDT", "S": "Buy", "v": "0.1", "p": "42000", "i": "d"},
            ]})
            btc = await t
            await session.close()
            return ws.sent, trades, btc

        sent, trades, btc = asyncio.run(run())
        assert len(sent) == 1
        assert sent[0]["args"] == ["publicTrade.BTCUSDT", "publicTrade.ETHUSDT"]
        assert [t.id for t in trades] == ["b", "c"]
        assert {t.symbol for t in trades} == {"ETH/USDT"}
        assert [t.id for t in btc] == ["d"]

    def test_unwatch_ticker_rejects_multi_symbol_waiters(self, connector):
        async def run():
            session = make_session(connector)
            multi = asyncio.ensure_future(session.watch_tickers(["BTC/USDT", "ETH/USDT"]))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            single = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            await settle()
            assert await session.unwatch_ticker("BTC/USDT") is True
            results = await asyncio.gather(multi, single, return_exceptions=True)
            conn = session.pool.get(PUBLIC_URL)
            topics = set(conn.subscriptions)
            pending = [r.topics for r in conn.pending_requests.values()]
            await session.close()
            return results, topics, pending, ws.frames("op", "unsubscribe")

        results, topics, pending, unsub = asyncio.run(run())
        assert all(isinstance(r, UnsubscribedError) for r in results)
        assert topics == {"tickers.ETHUSDT"}
        assert pending == [["tickers.ETHUSDT"]]
        assert unsub[0]["args"] == ["tickers.BTCUSDT"]


# ── 인증 ──

class TestAuthentication:

    def test_concurrent_private_watch_shares_login(self, connector):
        """동시 private 호출은 로그인 프레임 1회, 구독 프레임 1회"""
        async def run():
            session = make_session(connector)
            t1 = asyncio.ensure_future(session.watch_orders())
            t2 = asyncio.ensure_future(session.watch_orders("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            await settle()
            assert len(ws.frames("op", "auth")) == 1
            assert ws.url == "wss://stream.bybit.com/v5/private"

            ws.push(AUTH_OK)
            await wait_sent(ws, 2)
            await settle()
            subs = ws.frames("op", "subscribe")
            assert len(subs) == 1 and subs[0]["args"] == ["order"]
            ws.push(ack(subs[0]))
            ws.push({"topic": "order", "id": "x", "creationTime": 1, "data": [{
                "symbol": "BTCUSDT", "orderId": "o1", "orderLinkId": "", "side": "Buy",
                "orderType": "Limit", "price": "100", "qty": "1", "cumExecQty": "0",
                "orderStatus": "New", "createdTime": "1", "updatedTime": "2",
            }]})
            r1, r2 = await asyncio.gather(t1, t2)
            await session.close()
            return r1, r2

        r1, r2 = asyncio.run(run())
        assert [o.id for o in r1] == ["o1"]
        assert [o.id for o in r2] == ["o1"]
        assert r1[0].side == "buy" and r1[0].client_order_id is None

    def test_watch_my_trades(self, connector):
        """execution 토픽: 같은 체결 id는 한 번만 누적, 심볼별 대기자도 resolve"""
        def execution(exec_id: str, symbol_id: str = "BTCUSDT", ts: str = "10") -> dict:
            return {"symbol": symbol_id, "execId": exec_id, "orderId": "o1",
                    "execPrice": "100", "execQty": "0.5", "execFee": "0.01",
                    "isMaker": False, "side": "Buy", "execTime": ts}

        async def run():
            session = make_session(connector)
            t_all = asyncio.ensure_future(session.watch_my_trades())
            t_btc = asyncio.ensure_future(session.watch_my_trades("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(AUTH_OK)
            await wait_sent(ws, 2)
            await settle()
            subs = ws.frames("op", "subscribe")
            ws.push(ack(subs[0]))
            ws.push({"topic": "execution", "id": "x", "creationTime": 1, "data": [
                execution("e1"), execution("e2", "ETHUSDT", "11"), execution("e1"),
            ]})
            everything, btc = await asyncio.gather(t_all, t_btc)
            await session.close()
            return subs, everything, btc

        subs, everything, btc = asyncio.run(run())
        assert len(subs) == 1 and subs[0]["args"] == ["execution"]
        assert [(t.symbol, t.id) for t in everything] == [("BTC/USDT", "e1"), ("ETH/USDT", "e2")]
        assert [t.id for t in btc] == ["e1"]
        assert btc[0].order_id == "o1"
        assert btc[0].taker_or_maker == "taker"

    def test_positions_cache_bounded(self, connector):
        """서로 다른 (symbol, side)가 많아도 positions_limit을 넘지 않음"""
        session = make_session(connector, positions_limit=3)
        conn = MagicMock()
        for i in range(10):
            session._handle_positions(conn, {"topic": "position", "creationTime": i, "data": [
                {"symbol": f"C{i}USDT", "side": "Buy", "size": "1", "updatedTime": str(i)},
            ]})
        assert [p.symbol for p in session.positions.to_list()] == ["C7USDT", "C8USDT", "C9USDT"]

    def test_login_failure_allows_retry(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_balance())
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(AUTH_FAIL)
            with pytest.raises(AuthenticationError):
                await t

            t = asyncio.ensure_future(session.watch_balance())
            await wait_sent(ws, 2)
            auth_frames = len(ws.frames("op", "auth"))
            ws.push(AUTH_FAIL)
            with pytest.raises(AuthenticationError):
                await t
            await session.close()
            return auth_frames, len(connector.sockets)

        assert asyncio.run(run()) == (2, 1)

    def test_missing_credentials(self, connector):
        async def run():
            session = make_session(connector, api_key="", secret="")
            with pytest.raises(AuthenticationError):
                await session.watch_orders()

        asyncio.run(run())
        assert connector.calls == []

    def test_positions_snapshot_merged_with_pushes(self, connector):
        """REST 스냅샷 로딩 중 받은 push는 보류 후 적용, 최신 값이 남음"""
        responses = {
            "linear": {"retCode": 0, "result": {"list": [
                {"symbol": "BTCUSDT", "side": "Buy", "size": "1", "updatedTime": "100"},
                {"symbol": "ETHUSDT", "side": "Sell", "size": "5", "updatedTime": "100"},
            ]}},
            "inverse": {"retCode": 0, "result": {"list": []}},
        }

        async def run():
            release = asyncio.Event()

            async def fetch(url, params=None, headers=None):
                await release.wait()
                return responses[params["category"]]

            rest = MagicMock()
            rest.fetch = fetch
            session = make_session(connector, rest=rest)
            t = asyncio.ensure_future(session.watch_positions())
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(AUTH_OK)
            await wait_sent(ws, 2)
            ws.push(ack(ws.frames("op", "subscribe")[0]))
            await settle()
            assert session.bootstrap.is_loading("positions")

            ws.push({"topic": "position", "creationTime": 200, "data": [
                {"symbol": "BTCUSDT", "side": "Buy", "size": "3", "updatedTime": "200"},
            ]})
            await settle()
            release.set()
            first = await t

            # 이후 호출은 push 대기
            t = asyncio.ensure_future(session.watch_positions(["ETH/USDT"]))
            await settle()
            ws.push({"topic": "position", "creationTime": 300, "data": [
                {"symbol": "ETHUSDT", "side": "Sell", "size": "0", "updatedTime": "300"},
            ]})
            second = await t

            ws.drop()
            await settle()
            loaded_after_drop = session.bootstrap.is_loaded("positions")
            await session.close()
            return first, second, loaded_after_drop

        first, second, loaded_after_drop = asyncio.run(run())
        by_symbol = {p.symbol: p for p in first}
        assert by_symbol["BTC/USDT"].contracts == 3.0
        assert by_symbol["ETH/USDT"].contracts == 5.0
        assert [(p.symbol, p.contracts) for p in second] == [("ETH/USDT", 0.0)]
        assert loaded_after_drop is False

    def test_balance_snapshot(self, connector):
        async def run():
            rest = MagicMock()

            async def fetch(url, params=None, headers=None):
                assert params == {"accountType": "UNIFIED"}
                assert "X-BAPI-SIGN" in headers
                return {"retCode": 0, "result": {"list": [{"coin": [
                    {"coin": "USDT", "walletBalance": "100", "availableToWithdraw": "90",
                     "locked": "10"},
                ]}]}}

            rest.fetch = fetch
            session = make_session(connector, rest=rest)
            t = asyncio.ensure_future(session.watch_balance())
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(AUTH_OK)
            balance = await t
            await session.close()
            return balance

        balance = asyncio.run(run())
        assert balance["USDT"].free == 90.0
        assert balance["USDT"].total == 100.0


# ── 오더북 재동기화 ──

class TestOrderBookResync:

    def test_gap_triggers_resubscribe(self, connector, tmp_path):
        async def run():
            il = IntegrityLogger(tmp_path)
            session = make_session(connector, integrity_logger=il)
            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(ack(ws.sent[0]))
            ws.push(book_msg("snapshot", 10, bids=[["100.0", "1.0"]], asks=[["101.0", "1.0"]]))
            assert (await t).nonce == 10

            ws.push(book_msg("delta", 11, bids=[["100.0", "2.0"]]))
            ws.push(book_msg("delta", 13, bids=[["99.0", "1.0"]]))
            await wait_sent(ws, 3)
            ops = [f["op"] for f in ws.sent]
            assert ops == ["subscribe", "unsubscribe", "subscribe"]
            assert session.books.book("BTC/USDT") is None

            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            await settle()
            ws.push(book_msg("snapshot", 20, bids=[["98.0", "1.0"]], asks=[["102.0", "1.0"]]))
            book = await t
            await settle()
            stats = il.get_periodic_stats()
            statuses = [r["status"] for r in il._resyncs]
            await session.close()
            return book, stats, statuses

        book, stats, statuses = asyncio.run(run())
        assert book.nonce == 20
        assert book.bids == [[98.0, 1.0]]
        assert stats["gap_count"] == 1
        assert stats["gaps"][0]["expected_id"] == 12
        assert statuses == ["requested", "succeeded"]

    def test_next_watch_restarts_after_failed_resync(self, connector):
        """재동기화 포기 후에도 다음 watch_order_book이 재구독으로 스냅샷을 다시 받음"""
        async def run():
            session = make_session(connector, subscribe_timeout=0.05, max_resync_attempts=1)
            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(ack(ws.sent[0]))
            ws.push(book_msg("snapshot", 10, bids=[["100.0", "1.0"]], asks=[["101.0", "1.0"]]))
            await t

            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            await settle()
            ws.push(book_msg("delta", 12, bids=[["99.0", "1.0"]]))
            with pytest.raises(ExchangeError):
                await asyncio.wait_for(t, 1.0)
            await settle()
            sent_before = len(ws.sent)
            ws.push(book_msg("delta", 13, bids=[["98.0", "1.0"]]))
            await settle()

            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            await wait_sent(ws, sent_before + 2)
            retry_ops = [f["op"] for f in ws.sent[sent_before:]]
            ws.push(book_msg("snapshot", 20, bids=[["97.0", "1.0"]], asks=[["102.0", "1.0"]]))
            book = await asyncio.wait_for(t, 1.0)
            await session.close()
            return retry_ops, book

        retry_ops, book = asyncio.run(run())
        assert retry_ops == ["unsubscribe", "subscribe"]
        assert book.nonce == 20
        assert book.bids == [[97.0, 1.0]]

    def test_watch_order_book_for_symbols(self, connector):
        """여러 심볼을 한 프레임으로 구독, 먼저 도착한 심볼의 오더북 반환"""
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(
                session.watch_order_book_for_symbols(["BTC/USDT", "ETH/USDT"], limit=1)
            )
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(ack(ws.sent[0]))
            ws.push({"topic": "orderbook.50.ETHUSDT", "type": "snapshot", "ts": 1,
                     "data": {"s": "ETHUSDT", "b": [["2000", "1"], ["1999", "2"]],
                              "a": [["2001", "1"]], "u": 3}})
            book = await t
            with pytest.raises(BadRequest):
                await session.watch_order_book_for_symbols([])
            await session.close()
            return ws.sent[0], book

        frame, book = asyncio.run(run())
        assert frame["args"] == ["orderbook.50.BTCUSDT", "orderbook.50.ETHUSDT"]
        assert book.symbol == "ETH/USDT"
        assert book.bids == [[2000.0, 1.0]]

    def test_unwatch_order_book_evicts(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(book_msg("snapshot", 5, bids=[["1.0", "1.0"]]))
            await t
            removed = await session.unwatch_order_book("BTC/USDT")
            # 해제 후 도착한 메시지는 무시
            ws.push(book_msg("delta", 6, bids=[["2.0", "1.0"]]))
            await settle()
            states = dict(session.books.books)
            await session.close()
            return removed, states, ws.frames("op", "unsubscribe")

        removed, states, unsub = asyncio.run(run())
        assert removed is True
        assert states == {}
        assert unsub[0]["args"] == ["orderbook.50.BTCUSDT"]


# ── 연결 장애 ──

class TestConnectionFailure:

    def test_drop_rejects_waiters_and_next_call_reconnects(self, connector, tmp_path):
        async def run():
            il = IntegrityLogger(tmp_path)
            session = make_session(connector, integrity_logger=il)
            tasks = [asyncio.ensure_future(session.watch_ticker("BTC/USDT")) for _ in range(3)]
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            await settle()
            assert len(ws.frames("op", "subscribe")) == 1

            ws.drop()
            results = await asyncio.gather(*tasks, return_exceptions=True)

            t = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            ws2 = await connector.wait_for_socket(1)
            await wait_sent(ws2, 1)
            ws2.push(ticker_msg())
            ticker = await t
            await session.close()
            return results, ws2.sent[0], ticker, il.get_periodic_stats()

        results, resub, ticker, stats = asyncio.run(run())
        assert all(isinstance(r, NetworkError) for r in results)
        assert resub["args"] == ["tickers.BTCUSDT"]
        assert ticker.symbol == "BTC/USDT"
        assert stats["reconnect_count"] >= 1

    def test_drop_invalidates_books(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_order_book("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push(book_msg("snapshot", 5, bids=[["1.0", "1.0"]]))
            await t
            ws.drop()
            await settle()
            book = session.books.book("BTC/USDT")
            await session.close()
            return book

        assert asyncio.run(run()) is None

    def test_malformed_frame_survives(self, connector):
        async def run():
            session = make_session(connector)
            t = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            ws = await connector.wait_for_socket()
            await wait_sent(ws, 1)
            ws.push("{garbage")
            ws.push({"topic": "tickers.BTCUSDT", "data": "unexpected"})
            ws.push(ticker_msg(last="7"))
            ticker = await t
            await session.close()
            return ticker

        assert asyncio.run(run()).last == 7.0

    def test_missing_pong_fails_connection(self, connector):
        async def run():
            session = make_session(connector, ping_interval=0.01, pong_timeout=0.02)
            t = asyncio.ensure_future(session.watch_ticker("BTC/USDT"))
            ws = await connector.wait_for_socket()
            with pytest.raises(RequestTimeout):
                await asyncio.wait_for(t, 1.0)
            pings = ws.frames("op", "ping")
            await session.close()
            return pings

        pings = asyncio.run(run())
        assert pings
        assert all("req_id" in p for p in pings)
