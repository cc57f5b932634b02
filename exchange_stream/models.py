"""데이터 모델 정의 - 통합 스트리밍 레코드 및 내부 상태"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ChannelKind(Enum):
    """수신 메시지 종류 (파싱 시 한 번 결정, 라우터 테이블 키)"""
    TICKER = "ticker"
    ORDER_BOOK = "orderbook"
    TRADES = "trades"
    OHLCV = "ohlcv"
    ORDERS = "orders"
    MY_TRADES = "my_trades"
    POSITIONS = "positions"
    BALANCE = "balance"
    # 제어 프레임
    PONG = "pong"
    SUBSCRIBED = "subscribed"
    AUTH = "auth"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class Envelope:
    """어댑터가 분류한 수신 프레임"""
    kind: ChannelKind
    request_id: str | None = None
    success: bool = True
    error: Exception | None = None


# ── 오더북 관련 ──

@dataclass
class BookUpdate:
    """오더북 스냅샷/델타 (거래소 공통 형태)"""
    symbol: str
    bids: list[list[float]]              # [[price, amount], ...]
    asks: list[list[float]]
    snapshot: bool = False
    sequence: int | None = None          # 이 업데이트의 마지막 시퀀스
    first_sequence: int | None = None    # 범위형 시퀀스의 시작 (없으면 sequence)
    timestamp: int | None = None         # ms

    @property
    def first(self) -> int | None:
        return self.first_sequence if self.first_sequence is not None else self.sequence


@dataclass
class OrderBookSnapshot:
    """호출자에게 전달되는 오더북 뷰 (상위 N호가 복사본)"""
    symbol: str
    bids: list[list[float]]              # 가격 내림차순
    asks: list[list[float]]              # 가격 오름차순
    nonce: int | None = None
    timestamp: int | None = None


# ── 시세 관련 ──

@dataclass
class Ticker:
    symbol: str
    timestamp: int | None = None
    last: float | None = None
    bid: float | None = None
    bid_volume: float | None = None
    ask: float | None = None
    ask_volume: float | None = None
    high: float | None = None
    low: float | None = None
    open: float | None = None
    base_volume: float | None = None
    quote_volume: float | None = None
    info: dict = field(default_factory=dict, repr=False)


@dataclass
class Trade:
    symbol: str
    id: str | None
    timestamp: int               # ms
    side: str | None
    price: float
    amount: float
    info: dict = field(default_factory=dict, repr=False)


@dataclass
class Candle:
    """OHLCV 캔들 (timestamp = 시작 시각 ms)"""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


# ── 계정 관련 ──

@dataclass
class Order:
    symbol: str
    id: str
    client_order_id: str | None = None
    timestamp: int | None = None
    side: str | None = None
    type: str | None = None
    price: float | None = None
    amount: float | None = None
    filled: float | None = None
    status: str | None = None
    info: dict = field(default_factory=dict, repr=False)


@dataclass
class MyTrade:
    """내 주문의 체결 (execution)"""
    symbol: str
    id: str
    order_id: str | None = None
    timestamp: int | None = None
    side: str | None = None
    price: float | None = None
    amount: float | None = None
    fee: float | None = None
    taker_or_maker: str | None = None
    info: dict = field(default_factory=dict, repr=False)


@dataclass
class Position:
    symbol: str
    side: str | None             # long / short / None (단방향)
    contracts: float | None = None
    entry_price: float | None = None
    mark_price: float | None = None
    unrealized_pnl: float | None = None
    leverage: float | None = None
    timestamp: int | None = None
    info: dict = field(default_factory=dict, repr=False)


@dataclass
class BalanceEntry:
    """통화별 잔고 (None 필드는 '이번 업데이트에 없음')"""
    currency: str
    free: float | None = None
    used: float | None = None
    total: float | None = None
    timestamp: int | None = None
