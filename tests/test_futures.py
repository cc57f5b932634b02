"""FutureTable 테스트
Feature: exchange-stream
Property 7: resolve 브로드캐스트
"""

import asyncio

import pytest
from hypothesis import given, strategies as st, settings

from exchange_stream.errors import NetworkError
from exchange_stream.futures import FutureTable


# ── Property 7: resolve 브로드캐스트 ──

class TestBroadcast:

    @given(count=st.integers(min_value=0, max_value=30))
    @settings(max_examples=50)
    def test_all_waiters_receive_same_value(self, count):
        """resolve 시점에 등록된 대기자 전원이 같은 값을 받음"""
        async def run():
            table = FutureTable()
            futs = [table.future("ticker:BTC/USDT") for _ in range(count)]
            woken = table.resolve({"last": 1.0}, "ticker:BTC/USDT")
            results = [await f for f in futs]
            return woken, results, len(table)

        woken, results, remaining = asyncio.run(run())
        assert woken == count
        assert all(r == {"last": 1.0} for r in results)
        assert remaining == 0


class TestFutureTableUnit:

    def test_later_waiter_gets_next_resolve(self):
        async def run():
            table = FutureTable()
            first = table.future("trades:BTC/USDT")
            table.resolve(1, "trades:BTC/USDT")
            second = table.future("trades:BTC/USDT")
            assert not second.done()
            table.resolve(2, "trades:BTC/USDT")
            return await first, await second, table.generation("trades:BTC/USDT")

        assert asyncio.run(run()) == (1, 2, 2)

    def test_cancelled_waiter_does_not_affect_others(self):
        async def run():
            table = FutureTable()
            a = table.future("h")
            b = table.future("h")
            a.cancel()
            await asyncio.sleep(0)
            assert len(table) == 1
            assert table.resolve("x", "h") == 1
            return await b

        assert asyncio.run(run()) == "x"

    def test_reject_single_hash(self):
        async def run():
            table = FutureTable()
            a = table.future("a")
            b = table.future("b")
            assert table.reject(NetworkError("down"), "a") == 1
            with pytest.raises(NetworkError):
                await a
            assert not b.done()
            assert table.has_waiters("b")

        asyncio.run(run())

    def test_reject_all(self):
        async def run():
            table = FutureTable()
            futs = [table.future(h) for h in ("a", "b", "c")]
            assert table.reject(NetworkError("down")) == 3
            for f in futs:
                with pytest.raises(NetworkError):
                    await f
            assert len(table) == 0

        asyncio.run(run())

    def test_reject_futures_only_given(self):
        async def run():
            table = FutureTable()
            mine = table.future("h")
            other = table.future("h")
            assert table.reject_futures(NetworkError("x"), [mine]) == 1
            assert not other.done()
            with pytest.raises(NetworkError):
                await mine

        asyncio.run(run())

    def test_resolve_without_waiters(self):
        async def run():
            table = FutureTable()
            return table.resolve(1, "nobody")

        assert asyncio.run(run()) == 0

    def test_find_message_hashes(self):
        async def run():
            table = FutureTable()
            table.future("tickers::BTC/USDT,ETH/USDT")
            table.future("ticker:BTC/USDT")
            return table.find_message_hashes("tickers::")

        assert asyncio.run(run()) == ["tickers::BTC/USDT,ETH/USDT"]
