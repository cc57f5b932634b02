"""Bybit v5 어댑터 - public/private 스트림, 애플리케이션 ping, WebSocket 로그인"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from exchange_stream.adapters.base import ExchangeAdapter, safe_float, safe_int
from exchange_stream.auth import hmac_sha256
from exchange_stream.errors import (
    AuthenticationError,
    BadRequest,
    ErrorMapper,
    InsufficientFunds,
    NotSupported,
    OrderNotFound,
    RateLimitExceeded,
)
from exchange_stream.models import (
    BalanceEntry,
    BookUpdate,
    Candle,
    ChannelKind,
    Envelope,
    MyTrade,
    Order,
    Position,
    Ticker,
    Trade,
)

if TYPE_CHECKING:
    from exchange_stream.rest import RestClient

WS_HOST = "wss://stream.bybit.com"
REST_HOST = "https://api.bybit.com"
RECV_WINDOW = "5000"
LOGIN_EXPIRY_MS = 10000

# topic 접두어 → 채널
TOPIC_KINDS = {
    "orderbook": ChannelKind.ORDER_BOOK,
    "publicTrade": ChannelKind.TRADES,
    "tickers": ChannelKind.TICKER,
    "kline": ChannelKind.OHLCV,
    "order": ChannelKind.ORDERS,
    "execution": ChannelKind.MY_TRADES,
    "position": ChannelKind.POSITIONS,
    "wallet": ChannelKind.BALANCE,
}

# 시장 유형별 허용 오더북 깊이
ORDER_BOOK_DEPTHS = {
    "spot": (1, 50, 200),
    "linear": (1, 50, 200, 500),
    "inverse": (1, 50, 200, 500),
}


class BybitAdapter(ExchangeAdapter):
    """Bybit v5 통합 계정 스트림"""

    name = "bybit"
    channels = frozenset({
        ChannelKind.TICKER, ChannelKind.ORDER_BOOK, ChannelKind.TRADES, ChannelKind.OHLCV,
        ChannelKind.ORDERS, ChannelKind.MY_TRADES, ChannelKind.POSITIONS, ChannelKind.BALANCE,
    })
    timeframes = {
        "1m": "1", "3m": "3", "5m": "5", "15m": "15", "30m": "30",
        "1h": "60", "2h": "120", "4h": "240", "6h": "360", "12h": "720",
        "1d": "D", "1w": "W", "1M": "M",
    }
    error_mapper = ErrorMapper(
        exact={
            "10001": BadRequest,
            "10002": BadRequest,
            "10003": AuthenticationError,
            "10004": AuthenticationError,
            "10005": AuthenticationError,
            "10006": RateLimitExceeded,
            "10018": RateLimitExceeded,
            "110001": OrderNotFound,
            "110007": InsufficientFunds,
            "110012": InsufficientFunds,
            "-10009": BadRequest,
        },
        broad={
            "USVC1111": AuthenticationError,
            "handler not found": BadRequest,
            "invalid op": BadRequest,
            "Invalid period": BadRequest,
            "Too many visits": RateLimitExceeded,
        },
    )
    acknowledges_subscriptions = True
    order_book_snapshot_via_rest = False
    app_level_ping = True
    has_positions_snapshot = True
    has_balance_snapshot = True

    def __init__(self, market_type: str = "spot", markets: dict[str, str] | None = None):
        if market_type == "swap":
            market_type = "linear"
        if market_type not in ORDER_BOOK_DEPTHS:
            raise NotSupported(f"bybit: market_type {market_type} 미지원")
        super().__init__(market_type, markets)

    # ── URL / 토픽 ──

    def public_url(self) -> str:
        return f"{WS_HOST}/v5/public/{self.market_type}"

    def private_url(self) -> str:
        return f"{WS_HOST}/v5/private"

    def ticker_topic(self, market_id: str) -> str:
        return f"tickers.{market_id}"

    def order_book_topic(self, market_id: str, depth: int) -> str:
        allowed = ORDER_BOOK_DEPTHS[self.market_type]
        if depth not in allowed:
            raise BadRequest(f"bybit {self.market_type} 오더북 깊이는 {allowed} 중 하나여야 함")
        return f"orderbook.{depth}.{market_id}"

    def trades_topic(self, market_id: str) -> str:
        return f"publicTrade.{market_id}"

    def ohlcv_topic(self, market_id: str, interval: str) -> str:
        return f"kline.{interval}.{market_id}"

    def orders_topic(self) -> str:
        return "order"

    def my_trades_topic(self) -> str:
        return "execution"

    def positions_topic(self) -> str:
        return "position"

    def balance_topic(self) -> str:
        return "wallet"

    # ── 요청 프레임 ──

    def build_subscribe(self, topics: list[str], request_id: str) -> dict:
        return {"op": "subscribe", "req_id": request_id, "args": list(topics)}

    def build_unsubscribe(self, topics: list[str], request_id: str) -> dict:
        return {"op": "unsubscribe", "req_id": request_id, "args": list(topics)}

    def build_login(self, api_key: str, secret: str, now_ms: int) -> dict:
        expires = now_ms + LOGIN_EXPIRY_MS
        signature = hmac_sha256(secret, f"GET/realtime{expires}")
        return {"op": "auth", "args": [api_key, expires, signature]}

    def build_ping(self, request_id: str) -> dict:
        return {"req_id": request_id, "op": "ping"}

    # ── 분류 ──

    def classify(self, message: Any) -> Envelope:
        if not isinstance(message, dict):
            return Envelope(ChannelKind.UNKNOWN)
        topic = message.get("topic")
        if topic and "data" in message:
            return Envelope(TOPIC_KINDS.get(topic.split(".")[0], ChannelKind.UNKNOWN))

        op = message.get("op")
        ret_msg = message.get("ret_msg") or ""
        if ret_msg == "pong" or op == "pong" or "pong" in message:
            return Envelope(ChannelKind.PONG)

        request_op = (message.get("request") or {}).get("op")
        success = message.get("success")
        if op == "auth" or request_op == "auth":
            if success:
                return Envelope(ChannelKind.AUTH)
            return Envelope(ChannelKind.AUTH, success=False,
                            error=AuthenticationError(f"bybit 인증 실패: {ret_msg}"))

        request_id = message.get("req_id")
        if op in ("subscribe", "unsubscribe") and success:
            return Envelope(ChannelKind.SUBSCRIBED, request_id=request_id)

        code = message.get("code", message.get("ret_code"))
        if success is False or code not in (None, 0, "0"):
            text = ret_msg or message.get("desc") or message.get("msg") or ""
            error = self.error_mapper.map(code, text, f"bybit {text or message}")
            return Envelope(ChannelKind.ERROR, request_id=request_id, success=False, error=error)
        return Envelope(ChannelKind.UNKNOWN)

    # ── 파서 ──

    def parse_ticker(self, message: dict) -> list[Ticker]:
        data = message["data"]
        market_id = data.get("symbol") or message["topic"].split(".")[-1]
        timestamp = safe_int(message, "ts")
        return [Ticker(
            symbol=self.markets.symbol(market_id),
            timestamp=timestamp,
            last=safe_float(data, "lastPrice"),
            bid=safe_float(data, "bid1Price"),
            bid_volume=safe_float(data, "bid1Size"),
            ask=safe_float(data, "ask1Price"),
            ask_volume=safe_float(data, "ask1Size"),
            high=safe_float(data, "highPrice24h"),
            low=safe_float(data, "lowPrice24h"),
            open=safe_float(data, "prevPrice24h"),
            base_volume=safe_float(data, "volume24h"),
            quote_volume=safe_float(data, "turnover24h"),
            info=dict(data),
        )]

    def parse_order_book(self, message: dict) -> list[BookUpdate]:
        data = message["data"]
        sequence = safe_int(data, "u")
        # u=1은 서버 재시작으로 인한 스냅샷
        snapshot = message.get("type") == "snapshot" or sequence == 1
        return [BookUpdate(
            symbol=self.markets.symbol(data["s"]),
            bids=[[float(p), float(a)] for p, a in data.get("b", [])],
            asks=[[float(p), float(a)] for p, a in data.get("a", [])],
            snapshot=snapshot,
            sequence=sequence,
            timestamp=safe_int(message, "ts"),
        )]

    def parse_trades(self, message: dict) -> list[Trade]:
        trades = []
        for t in message["data"]:
            side = t.get("S")
            trades.append(Trade(
                symbol=self.markets.symbol(t["s"]),
                id=t.get("i"),
                timestamp=int(t["T"]),
                side=side.lower() if side else None,
                price=float(t["p"]),
                amount=float(t["v"]),
                info=t,
            ))
        return trades

    def parse_ohlcv(self, message: dict) -> list[tuple[str, str, Candle]]:
        # kline.{interval}.{market_id}
        _, interval, market_id = message["topic"].split(".", 2)
        symbol = self.markets.symbol(market_id)
        timeframe = self.find_timeframe(interval)
        result = []
        for k in message["data"]:
            result.append((symbol, timeframe, Candle(
                timestamp=int(k["start"]),
                open=float(k["open"]),
                high=float(k["high"]),
                low=float(k["low"]),
                close=float(k["close"]),
                volume=float(k["volume"]),
            )))
        return result

    def parse_orders(self, message: dict) -> list[Order]:
        orders = []
        for o in message["data"]:
            side = o.get("side")
            order_type = o.get("orderType")
            orders.append(Order(
                symbol=self.markets.symbol(o["symbol"]),
                id=o["orderId"],
                client_order_id=o.get("orderLinkId") or None,
                timestamp=safe_int(o, "updatedTime") or safe_int(o, "createdTime"),
                side=side.lower() if side else None,
                type=order_type.lower() if order_type else None,
                price=safe_float(o, "price"),
                amount=safe_float(o, "qty"),
                filled=safe_float(o, "cumExecQty"),
                status=o.get("orderStatus"),
                info=o,
            ))
        return orders

    def parse_my_trades(self, message: dict) -> list[MyTrade]:
        data = message["data"]
        if not isinstance(data, list):
            data = data.get("result", [])
        trades = []
        for e in data:
            side = e.get("side")
            is_maker = e.get("isMaker")
            trades.append(MyTrade(
                symbol=self.markets.symbol(e["symbol"]),
                id=e["execId"],
                order_id=e.get("orderId"),
                timestamp=safe_int(e, "execTime"),
                side=side.lower() if side else None,
                price=safe_float(e, "execPrice"),
                amount=safe_float(e, "execQty"),
                fee=safe_float(e, "execFee"),
                taker_or_maker=None if is_maker is None else ("maker" if is_maker else "taker"),
                info=e,
            ))
        return trades

    def parse_positions(self, message: dict) -> list[Position]:
        fallback = safe_int(message, "creationTime")
        return [self._parse_position(p, fallback) for p in message["data"]]

    def _parse_position(self, p: dict, fallback_ts: int | None = None) -> Position:
        side = {"Buy": "long", "Sell": "short"}.get(p.get("side"))
        return Position(
            symbol=self.markets.symbol(p["symbol"]),
            side=side,
            contracts=safe_float(p, "size"),
            entry_price=safe_float(p, "entryPrice") or safe_float(p, "avgPrice"),
            mark_price=safe_float(p, "markPrice"),
            unrealized_pnl=safe_float(p, "unrealisedPnl"),
            leverage=safe_float(p, "leverage"),
            timestamp=safe_int(p, "updatedTime") or fallback_ts,
            info=p,
        )

    def parse_balance(self, message: dict) -> list[BalanceEntry]:
        timestamp = safe_int(message, "creationTime") or safe_int(message, "ts")
        entries = []
        for account in message["data"]:
            entries.extend(self._parse_coins(account.get("coin", []), timestamp))
        return entries

    @staticmethod
    def _parse_coins(coins: list[dict], timestamp: int | None) -> list[BalanceEntry]:
        entries = []
        for c in coins:
            free = safe_float(c, "availableToWithdraw")
            if free is None:
                free = safe_float(c, "free")
            entries.append(BalanceEntry(
                currency=c["coin"],
                free=free,
                used=safe_float(c, "locked"),
                total=safe_float(c, "walletBalance"),
                timestamp=timestamp,
            ))
        return entries

    # ── REST 스냅샷 ──

    def sign_request(self, api_key: str, secret: str, params: dict,
                     now_ms: int | None = None) -> dict:
        """v5 REST 서명 헤더"""
        timestamp = str(now_ms if now_ms is not None else int(time.time() * 1000))
        payload = timestamp + api_key + RECV_WINDOW + urlencode(params)
        return {
            "X-BAPI-API-KEY": api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": RECV_WINDOW,
            "X-BAPI-SIGN": hmac_sha256(secret, payload),
        }

    async def _private_get(self, rest: RestClient, path: str, params: dict,
                           api_key: str, secret: str) -> dict:
        headers = self.sign_request(api_key, secret, params)
        data = await rest.fetch(REST_HOST + path, params=params, headers=headers)
        code = data.get("retCode")
        if code not in (0, "0"):
            message = data.get("retMsg", "")
            raise self.error_mapper.map(code, message, f"bybit {path}: {message}")
        return data.get("result") or {}

    async def fetch_positions_snapshot(self, rest: RestClient, api_key: str,
                                       secret: str) -> list[Position]:
        # private 채널 하나가 모든 유형의 포지션을 보내므로 linear/inverse 모두 로드
        positions = []
        for category, settle in (("linear", "USDT"), ("inverse", None)):
            params = {"category": category}
            if settle:
                params["settleCoin"] = settle
            result = await self._private_get(rest, "/v5/position/list", params, api_key, secret)
            positions.extend(self._parse_position(p) for p in result.get("list", []))
        return positions

    async def fetch_balance_snapshot(self, rest: RestClient, api_key: str,
                                     secret: str) -> list[BalanceEntry]:
        params = {"accountType": "UNIFIED"}
        result = await self._private_get(rest, "/v5/account/wallet-balance", params,
                                         api_key, secret)
        entries = []
        for account in result.get("list", []):
            entries.extend(self._parse_coins(account.get("coin", []), None))
        return entries
