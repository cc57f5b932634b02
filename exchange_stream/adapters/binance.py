"""Binance spot 어댑터 - combined stream, REST 오더북 스냅샷, 프로토콜 ping"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from exchange_stream.adapters.base import ExchangeAdapter, safe_float, safe_int
from exchange_stream.errors import BadRequest, ErrorMapper, NotSupported, RateLimitExceeded
from exchange_stream.models import BookUpdate, Candle, ChannelKind, Envelope, Ticker, Trade

if TYPE_CHECKING:
    from exchange_stream.rest import RestClient

WS_URL = "wss://stream.binance.com:9443/stream"
REST_HOST = "https://api.binance.com"
DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000, 5000)


class BinanceAdapter(ExchangeAdapter):
    """Binance spot 공개 스트림 (user data stream은 listen key 방식이라 미지원)"""

    name = "binance"
    channels = frozenset({
        ChannelKind.TICKER, ChannelKind.ORDER_BOOK, ChannelKind.TRADES, ChannelKind.OHLCV,
    })
    timeframes = {
        tf: tf for tf in (
            "1s", "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h",
            "1d", "3d", "1w", "1M",
        )
    }
    error_mapper = ErrorMapper(
        exact={
            "0": BadRequest,
            "1": BadRequest,
            "2": BadRequest,
            "3": BadRequest,
            "-1003": RateLimitExceeded,
            "-1100": BadRequest,
            "-1121": BadRequest,
        },
        broad={
            "Invalid request": BadRequest,
            "Too many requests": RateLimitExceeded,
        },
    )
    acknowledges_subscriptions = True
    order_book_snapshot_via_rest = True
    app_level_ping = False

    def __init__(self, market_type: str = "spot", markets: dict[str, str] | None = None):
        if market_type != "spot":
            raise NotSupported(f"binance: market_type {market_type} 미지원")
        super().__init__(market_type, markets)

    def public_url(self) -> str:
        return WS_URL

    def ticker_topic(self, market_id: str) -> str:
        return f"{market_id.lower()}@ticker"

    def order_book_topic(self, market_id: str, depth: int) -> str:
        # diff 스트림은 깊이와 무관, 깊이는 REST 스냅샷에만 적용
        return f"{market_id.lower()}@depth@100ms"

    def trades_topic(self, market_id: str) -> str:
        return f"{market_id.lower()}@trade"

    def ohlcv_topic(self, market_id: str, interval: str) -> str:
        return f"{market_id.lower()}@kline_{interval}"

    def build_subscribe(self, topics: list[str], request_id: str) -> dict:
        return {"method": "SUBSCRIBE", "params": list(topics), "id": int(request_id)}

    def build_unsubscribe(self, topics: list[str], request_id: str) -> dict:
        return {"method": "UNSUBSCRIBE", "params": list(topics), "id": int(request_id)}

    def classify(self, message: Any) -> Envelope:
        if not isinstance(message, dict):
            return Envelope(ChannelKind.UNKNOWN)
        stream = message.get("stream")
        if stream and "data" in message:
            channel = stream.split("@", 1)[1] if "@" in stream else ""
            if channel.startswith("depth"):
                return Envelope(ChannelKind.ORDER_BOOK)
            if channel in ("trade", "aggTrade"):
                return Envelope(ChannelKind.TRADES)
            if channel == "ticker":
                return Envelope(ChannelKind.TICKER)
            if channel.startswith("kline_"):
                return Envelope(ChannelKind.OHLCV)
            return Envelope(ChannelKind.UNKNOWN)

        request_id = message.get("id")
        if request_id is not None:
            request_id = str(request_id)
        error = message.get("error")
        if error:
            code = error.get("code")
            text = error.get("msg", "")
            return Envelope(ChannelKind.ERROR, request_id=request_id, success=False,
                            error=self.error_mapper.map(code, text, f"binance {text}"))
        if request_id is not None and "result" in message:
            return Envelope(ChannelKind.SUBSCRIBED, request_id=request_id)
        return Envelope(ChannelKind.UNKNOWN)

    def parse_ticker(self, message: dict) -> list[Ticker]:
        d = message["data"]
        return [Ticker(
            symbol=self.markets.symbol(d["s"]),
            timestamp=safe_int(d, "E"),
            last=safe_float(d, "c"),
            bid=safe_float(d, "b"),
            bid_volume=safe_float(d, "B"),
            ask=safe_float(d, "a"),
            ask_volume=safe_float(d, "A"),
            high=safe_float(d, "h"),
            low=safe_float(d, "l"),
            open=safe_float(d, "o"),
            base_volume=safe_float(d, "v"),
            quote_volume=safe_float(d, "q"),
            info=d,
        )]

    def parse_order_book(self, message: dict) -> list[BookUpdate]:
        d = message["data"]
        return [BookUpdate(
            symbol=self.markets.symbol(d["s"]),
            bids=[[float(p), float(a)] for p, a in d.get("b", [])],
            asks=[[float(p), float(a)] for p, a in d.get("a", [])],
            snapshot=False,
            sequence=int(d["u"]),
            first_sequence=int(d["U"]),
            timestamp=safe_int(d, "E"),
        )]

    def parse_trades(self, message: dict) -> list[Trade]:
        d = message["data"]
        trade_id = d.get("t", d.get("a"))
        return [Trade(
            symbol=self.markets.symbol(d["s"]),
            id=str(trade_id) if trade_id is not None else None,
            timestamp=int(d["T"]),
            # 매수자가 maker면 매도 체결
            side="sell" if d.get("m") else "buy",
            price=float(d["p"]),
            amount=float(d["q"]),
            info=d,
        )]

    def parse_ohlcv(self, message: dict) -> list[tuple[str, str, Candle]]:
        k = message["data"]["k"]
        return [(self.markets.symbol(k["s"]), self.find_timeframe(k["i"]), Candle(
            timestamp=int(k["t"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
        ))]

    @staticmethod
    def snapshot_limit(depth: int) -> int:
        """REST depth 허용값 중 depth 이상인 최소값"""
        for limit in DEPTH_LIMITS:
            if limit >= depth:
                return limit
        return DEPTH_LIMITS[-1]

    async def fetch_order_book_snapshot(self, rest: RestClient, symbol: str,
                                        depth: int) -> BookUpdate:
        market_id = self.markets.market_id(symbol)
        data = await rest.fetch(
            f"{REST_HOST}/api/v3/depth",
            params={"symbol": market_id, "limit": self.snapshot_limit(depth)},
        )
        if "lastUpdateId" not in data:
            code = data.get("code")
            text = data.get("msg", "")
            raise self.error_mapper.map(code, text, f"binance depth {symbol}: {text}")
        return BookUpdate(
            symbol=symbol,
            bids=[[float(p), float(a)] for p, a in data.get("bids", [])],
            asks=[[float(p), float(a)] for p, a in data.get("asks", [])],
            snapshot=True,
            sequence=int(data["lastUpdateId"]),
        )
