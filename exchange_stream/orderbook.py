"""오더북 재구성 및 시퀀스 검증 모듈"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from exchange_stream.models import BookUpdate, OrderBookSnapshot

if TYPE_CHECKING:
    from exchange_stream.integrity_logger import IntegrityLogger

logger = logging.getLogger(__name__)


class BookState(Enum):
    UNINITIALIZED = "uninitialized"
    SNAPSHOT_RECEIVED = "snapshot_received"
    STREAMING = "streaming"


class ApplyResult(Enum):
    APPLIED = "applied"          # 상태 갱신됨 → 대기자 resolve
    BUFFERED = "buffered"        # 스냅샷 전 델타 보관
    IGNORED = "ignored"          # 이미 반영된 오래된 델타
    GAP = "gap"                  # 시퀀스 누락 → 재동기화 필요
    CROSSED = "crossed"          # best bid > best ask → 재동기화 필요


class OrderBookSide:
    """호가 한쪽: price → amount, 읽을 때 정렬"""

    def __init__(self, descending: bool):
        self.descending = descending
        self._levels: dict[float, float] = {}

    def store(self, price: float, amount: float) -> None:
        """amount 0은 해당 가격 레벨 삭제"""
        if amount == 0:
            self._levels.pop(price, None)
        else:
            self._levels[price] = amount

    def clear(self) -> None:
        self._levels.clear()

    def best(self) -> float | None:
        if not self._levels:
            return None
        return max(self._levels) if self.descending else min(self._levels)

    def to_list(self, limit: int | None = None) -> list[list[float]]:
        ordered = sorted(self._levels.items(), key=lambda x: x[0], reverse=self.descending)
        if limit is not None:
            ordered = ordered[:limit]
        return [[p, a] for p, a in ordered]

    def get(self, price: float) -> float | None:
        return self._levels.get(price)

    def __contains__(self, price: float) -> bool:
        return price in self._levels

    def __len__(self) -> int:
        return len(self._levels)


class OrderBook:
    """심볼별 오더북 (bids 내림차순, asks 오름차순)"""

    def __init__(self, symbol: str):
        self.symbol = symbol
        self.bids = OrderBookSide(descending=True)
        self.asks = OrderBookSide(descending=False)
        self.nonce: int | None = None
        self.timestamp: int | None = None

    def reset(self, update: BookUpdate) -> None:
        """스냅샷으로 전체 교체"""
        self.bids.clear()
        self.asks.clear()
        OrderBookReconstructor._apply_updates(self.bids, update.bids)
        OrderBookReconstructor._apply_updates(self.asks, update.asks)
        self.nonce = update.sequence
        self.timestamp = update.timestamp

    def clear(self) -> None:
        self.bids.clear()
        self.asks.clear()
        self.nonce = None

    def is_crossed(self) -> bool:
        best_bid = self.bids.best()
        best_ask = self.asks.best()
        return best_bid is not None and best_ask is not None and best_bid > best_ask

    def limit(self, levels: int | None = None) -> OrderBookSnapshot:
        """상위 N호가 뷰 (저장소는 건드리지 않음)"""
        return OrderBookSnapshot(
            symbol=self.symbol,
            bids=self.bids.to_list(levels),
            asks=self.asks.to_list(levels),
            nonce=self.nonce,
            timestamp=self.timestamp,
        )


@dataclass
class OrderBookState:
    """심볼별 오더북 내부 상태"""
    book: OrderBook
    status: BookState = BookState.UNINITIALIZED
    pending: deque = field(default_factory=deque)    # 스냅샷 전 델타
    resync_attempts: int = 0
    resync_failed: bool = False    # 재동기화 포기 후 다음 watch 호출이 재요청

    @property
    def initialized(self) -> bool:
        return self.status is BookState.STREAMING


class OrderBookReconstructor:
    """스냅샷 + 델타 병합 및 시퀀스 검증"""

    def __init__(self, gap_tolerance: int = 0, max_buffered_deltas: int = 1000,
                 integrity_logger: IntegrityLogger | None = None):
        self.gap_tolerance = gap_tolerance
        self.max_buffered_deltas = max_buffered_deltas
        self.integrity_logger = integrity_logger
        self.books: dict[str, OrderBookState] = {}

    def state(self, symbol: str) -> OrderBookState:
        st = self.books.get(symbol)
        if st is None:
            st = OrderBookState(book=OrderBook(symbol),
                                pending=deque(maxlen=self.max_buffered_deltas))
            self.books[symbol] = st
        return st

    def book(self, symbol: str) -> OrderBook | None:
        """STREAMING 상태일 때만 오더북 반환"""
        st = self.books.get(symbol)
        if st is None or not st.initialized:
            return None
        return st.book

    def apply(self, update: BookUpdate) -> ApplyResult:
        if update.snapshot:
            return self.apply_snapshot(update)
        return self.apply_delta(update)

    def apply_snapshot(self, update: BookUpdate) -> ApplyResult:
        """이전 상태 폐기 후 스냅샷으로 재구성, 보관된 델타 재적용"""
        st = self.state(update.symbol)
        st.book.reset(update)
        st.status = BookState.SNAPSHOT_RECEIVED
        logger.info(f"[오더북] {update.symbol} 스냅샷 적용 (nonce={update.sequence})")

        pending = list(st.pending)
        st.pending.clear()
        for i, delta in enumerate(pending):
            result = self._merge(st, delta)
            if result is ApplyResult.GAP:
                st.pending.extend(pending[i + 1:])
                return result
            if result is ApplyResult.CROSSED:
                return result

        if st.book.is_crossed():
            self._invalidate(st, "스냅샷 호가 역전")
            return ApplyResult.CROSSED
        st.status = BookState.STREAMING
        st.resync_attempts = 0
        st.resync_failed = False
        return ApplyResult.APPLIED

    def apply_delta(self, update: BookUpdate) -> ApplyResult:
        st = self.state(update.symbol)
        if st.status is not BookState.STREAMING:
            st.pending.append(update)
            return ApplyResult.BUFFERED
        return self._merge(st, update)

    def validate_sequence(self, symbol: str, first_update_id: int,
                          final_update_id: int) -> bool:
        """연속성 검증: F <= nonce+1 (+허용 갭) 그리고 nonce+1 <= L"""
        st = self.books.get(symbol)
        if st is None or st.status is BookState.UNINITIALIZED or st.book.nonce is None:
            return False
        expected = st.book.nonce + 1
        return first_update_id <= expected + self.gap_tolerance and expected <= final_update_id

    def _merge(self, st: OrderBookState, update: BookUpdate) -> ApplyResult:
        book = st.book
        if update.sequence is not None and book.nonce is not None:
            expected = book.nonce + 1
            # 이미 반영된 오래된 델타 → 무시 (갭 아님)
            if update.sequence < expected:
                return ApplyResult.IGNORED
            if not self.validate_sequence(book.symbol, update.first, update.sequence):
                if self.integrity_logger:
                    self.integrity_logger.record_gap(
                        symbol=book.symbol,
                        expected_id=expected,
                        actual_id=update.first,
                        timestamp=time.time(),
                    )
                logger.warning(
                    f"[갭] {book.symbol} expected={expected}, "
                    f"got F={update.first} L={update.sequence}"
                )
                self._invalidate(st, "시퀀스 갭")
                st.pending.append(update)
                return ApplyResult.GAP

        self._apply_updates(book.bids, update.bids)
        self._apply_updates(book.asks, update.asks)
        if update.sequence is not None:
            book.nonce = update.sequence
        if update.timestamp is not None:
            book.timestamp = update.timestamp

        if book.is_crossed():
            self._invalidate(st, "호가 역전")
            return ApplyResult.CROSSED
        return ApplyResult.APPLIED

    def _invalidate(self, st: OrderBookState, reason: str) -> None:
        logger.warning(f"[오더북] {st.book.symbol} 상태 무효화: {reason}")
        st.book.clear()
        st.status = BookState.UNINITIALIZED

    def invalidate(self, symbol: str, reason: str = "재연결") -> None:
        st = self.books.get(symbol)
        if st is not None:
            self._invalidate(st, reason)
            st.pending.clear()
            st.resync_failed = False

    def evict(self, symbol: str) -> None:
        self.books.pop(symbol, None)

    @staticmethod
    def _apply_updates(book_side: OrderBookSide, updates: list[list[float]]) -> None:
        """오더북 한쪽(bids 또는 asks)에 업데이트 적용"""
        for level in updates:
            book_side.store(float(level[0]), float(level[1]))

    def get_top_levels(self, symbol: str, levels: int = 20) -> OrderBookSnapshot:
        """상위 N호가 반환 (bids 내림차순, asks 오름차순)"""
        return self.state(symbol).book.limit(levels)
