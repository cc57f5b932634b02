"""거래소 어댑터 공통 계약 - URL, 토픽, 프레임 빌더, 메시지 분류, 파서"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from exchange_stream.errors import ErrorMapper, NotSupported
from exchange_stream.models import (
    BalanceEntry,
    BookUpdate,
    ChannelKind,
    Envelope,
    MyTrade,
    Order,
    Position,
    Ticker,
    Trade,
)

if TYPE_CHECKING:
    from exchange_stream.models import Candle
    from exchange_stream.rest import RestClient


def safe_float(data: dict, key: str) -> float | None:
    """빈 문자열/누락은 None"""
    value = data.get(key)
    if value is None or value == "":
        return None
    return float(value)


def safe_int(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    return int(value)


class MarketIndex:
    """통합 심볼(BTC/USDT) ↔ 거래소 market id(BTCUSDT) 매핑"""

    def __init__(self, markets: dict[str, str] | None = None):
        self._ids: dict[str, str] = {}
        self._symbols: dict[str, str] = {}
        for symbol, market_id in (markets or {}).items():
            self.add(symbol, market_id)

    def add(self, symbol: str, market_id: str) -> None:
        self._ids[symbol] = market_id
        self._symbols[market_id.upper()] = symbol

    def market_id(self, symbol: str) -> str:
        market_id = self._ids.get(symbol)
        if market_id is None:
            market_id = self.default_id(symbol)
            self.add(symbol, market_id)
        return market_id

    def symbol(self, market_id: str) -> str:
        """모르는 id는 그대로 반환"""
        return self._symbols.get(market_id.upper(), market_id)

    @staticmethod
    def default_id(symbol: str) -> str:
        # 'BTC/USDT:USDT' (선물 표기) → 'BTCUSDT'
        return symbol.split(":")[0].replace("/", "").upper()


class ExchangeAdapter(ABC):
    """거래소별 와이어 포맷 어댑터

    엔진(세션/레지스트리/라우터)은 이 인터페이스만 사용한다.
    지원하지 않는 채널은 NotSupported를 던져 프레임 전송 전에 실패시킨다.
    """

    name = "base"
    channels: frozenset[ChannelKind] = frozenset()
    timeframes: dict[str, str] = {}
    error_mapper = ErrorMapper()
    acknowledges_subscriptions = True       # 구독 ack 프레임을 보내는지
    order_book_snapshot_via_rest = False    # 오더북 스냅샷을 REST로 받아야 하는지
    app_level_ping = False                  # False면 WebSocket 프로토콜 ping 사용
    has_positions_snapshot = False
    has_balance_snapshot = False

    def __init__(self, market_type: str = "spot", markets: dict[str, str] | None = None):
        self.market_type = market_type
        self.markets = MarketIndex(markets)

    def supports(self, kind: ChannelKind) -> bool:
        return kind in self.channels

    def require(self, kind: ChannelKind) -> None:
        if not self.supports(kind):
            raise NotSupported(f"{self.name} {self.market_type}: {kind.value} 채널 미지원")

    def timeframe_id(self, timeframe: str) -> str:
        interval = self.timeframes.get(timeframe)
        if interval is None:
            raise NotSupported(f"{self.name}: timeframe {timeframe} 미지원")
        return interval

    def find_timeframe(self, interval: str) -> str:
        for timeframe, value in self.timeframes.items():
            if value == interval:
                return timeframe
        return interval

    # ── URL ──

    @abstractmethod
    def public_url(self) -> str:
        ...

    def private_url(self) -> str:
        raise NotSupported(f"{self.name}: private 스트림 미지원")

    # ── 토픽 ──

    @abstractmethod
    def ticker_topic(self, market_id: str) -> str:
        ...

    @abstractmethod
    def order_book_topic(self, market_id: str, depth: int) -> str:
        ...

    @abstractmethod
    def trades_topic(self, market_id: str) -> str:
        ...

    @abstractmethod
    def ohlcv_topic(self, market_id: str, interval: str) -> str:
        ...

    def orders_topic(self) -> str:
        raise NotSupported(f"{self.name}: orders 채널 미지원")

    def my_trades_topic(self) -> str:
        raise NotSupported(f"{self.name}: my_trades 채널 미지원")

    def positions_topic(self) -> str:
        raise NotSupported(f"{self.name}: positions 채널 미지원")

    def balance_topic(self) -> str:
        raise NotSupported(f"{self.name}: balance 채널 미지원")

    # ── 요청 프레임 ──

    @abstractmethod
    def build_subscribe(self, topics: list[str], request_id: str) -> dict:
        ...

    def build_unsubscribe(self, topics: list[str], request_id: str) -> dict | None:
        return None

    def build_login(self, api_key: str, secret: str, now_ms: int) -> dict:
        raise NotSupported(f"{self.name}: WebSocket 로그인 미지원")

    def build_ping(self, request_id: str) -> dict | None:
        return None

    # ── 수신 ──

    def decode(self, raw: Any) -> Any:
        return json.loads(raw)

    @abstractmethod
    def classify(self, message: Any) -> Envelope:
        """메시지 종류 판별 (파싱 시 한 번)"""

    def parse_ticker(self, message: Any) -> list[Ticker]:
        raise NotSupported(f"{self.name}: ticker 파싱 미지원")

    def parse_order_book(self, message: Any) -> list[BookUpdate]:
        raise NotSupported(f"{self.name}: orderbook 파싱 미지원")

    def parse_trades(self, message: Any) -> list[Trade]:
        raise NotSupported(f"{self.name}: trades 파싱 미지원")

    def parse_ohlcv(self, message: Any) -> list[tuple[str, str, Candle]]:
        """(symbol, timeframe, candle) 목록"""
        raise NotSupported(f"{self.name}: ohlcv 파싱 미지원")

    def parse_orders(self, message: Any) -> list[Order]:
        raise NotSupported(f"{self.name}: orders 파싱 미지원")

    def parse_my_trades(self, message: Any) -> list[MyTrade]:
        raise NotSupported(f"{self.name}: my_trades 파싱 미지원")

    def parse_positions(self, message: Any) -> list[Position]:
        raise NotSupported(f"{self.name}: positions 파싱 미지원")

    def parse_balance(self, message: Any) -> list[BalanceEntry]:
        raise NotSupported(f"{self.name}: balance 파싱 미지원")

    # ── REST 스냅샷 ──

    async def fetch_order_book_snapshot(self, rest: RestClient, symbol: str,
                                        depth: int) -> BookUpdate:
        raise NotSupported(f"{self.name}: REST 오더북 스냅샷 미지원")

    async def fetch_positions_snapshot(self, rest: RestClient, api_key: str,
                                       secret: str) -> list[Position]:
        raise NotSupported(f"{self.name}: REST 포지션 스냅샷 미지원")

    async def fetch_balance_snapshot(self, rest: RestClient, api_key: str,
                                     secret: str) -> list[BalanceEntry]:
        raise NotSupported(f"{self.name}: REST 잔고 스냅샷 미지원")
