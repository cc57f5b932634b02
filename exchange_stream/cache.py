"""제한 크기 캐시 모듈 - 체결/캔들/주문/포지션/잔고 누적"""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from dataclasses import fields, replace
from typing import Any, Callable, Hashable, Iterator

from exchange_stream.models import BalanceEntry, Candle

logger = logging.getLogger(__name__)


def filter_by_since_limit(items: list, since: int | None = None, limit: int | None = None,
                          key: Callable[[Any], int | None] = lambda x: x.timestamp) -> list:
    """읽기 시점 뷰: since 이후(포함) 항목 중 최신 limit개"""
    result = list(items)
    if since is not None:
        result = [x for x in result if (key(x) or 0) >= since]
    if limit is not None:
        result = result[-limit:] if limit > 0 else []
    return result


class ArrayCache:
    """삽입 순서 유지, 용량 초과 시 가장 오래된 항목 제거 (id 중복 제거 없음)"""

    def __init__(self, max_size: int = 1000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._items: deque = deque(maxlen=max_size)

    def append(self, item) -> None:
        self._items.append(item)

    def to_list(self, limit: int | None = None) -> list:
        """복사본 반환 - limit은 뷰일 뿐 버퍼는 그대로"""
        items = list(self._items)
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    def __iter__(self) -> Iterator:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index):
        return self._items[index]


class ArrayCacheByTimestamp:
    """OHLCV 캐시 - 같은 시각은 교체, 이후 시각은 추가, 이전 시각은 거부"""

    def __init__(self, max_size: int = 1000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._items: deque[Candle] = deque(maxlen=max_size)

    def append(self, candle: Candle) -> bool:
        """같은 시각 교체 또는 추가. 삽입/교체 시 True, 순서 역전으로 거부 시 False"""
        if self._items:
            last = self._items[-1]
            if candle.timestamp == last.timestamp:
                self._items[-1] = candle
                return True
            if candle.timestamp < last.timestamp:
                logger.debug(
                    f"[캔들] 순서 역전 무시: ts={candle.timestamp} < last={last.timestamp}"
                )
                return False
        self._items.append(candle)
        return True

    def to_list(self, limit: int | None = None) -> list[Candle]:
        items = list(self._items)
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    def __iter__(self) -> Iterator[Candle]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index) -> Candle:
        return self._items[index]


class KeyedArrayCache:
    """키 기반 upsert 캐시

    같은 키의 업데이트는 기존 슬롯을 그대로 교체한다 (재정렬하지 않음).
    새 키는 끝에 추가되고, 용량 초과 시 가장 오래 삽입된 항목부터 제거된다.
    """

    def __init__(self, key: Callable[[Any], Hashable], max_size: int | None = None,
                 newest_wins: bool = False):
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._key = key
        self._newest_wins = newest_wins
        self._items: OrderedDict[Hashable, Any] = OrderedDict()

    def upsert(self, item) -> bool:
        """교체 또는 추가. newest_wins일 때 더 오래된 업데이트는 무시하고 False"""
        k = self._key(item)
        current = self._items.get(k)
        if current is not None:
            if self._newest_wins and _is_older(item, current):
                return False
            self._items[k] = item
            return True
        self._items[k] = item
        if self.max_size is not None:
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)
        return True

    # 다른 캐시와 같은 이름으로 사용
    append = upsert

    def get(self, key: Hashable):
        return self._items.get(key)

    def remove(self, key: Hashable) -> None:
        self._items.pop(key, None)

    def to_list(self, symbol: str | None = None, limit: int | None = None) -> list:
        items = list(self._items.values())
        if symbol is not None:
            items = [x for x in items if x.symbol == symbol]
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    def __iter__(self) -> Iterator:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)


def _is_older(new, current) -> bool:
    new_ts = getattr(new, "timestamp", None)
    cur_ts = getattr(current, "timestamp", None)
    return new_ts is not None and cur_ts is not None and new_ts < cur_ts


class ArrayCacheBySymbolById(KeyedArrayCache):
    """주문 캐시 - (symbol, id) 키"""

    def __init__(self, max_size: int | None = 1000):
        super().__init__(key=lambda o: (o.symbol, o.id), max_size=max_size)


class ArrayCacheBySymbolBySide(KeyedArrayCache):
    """포지션 캐시 - (symbol, side) 키, 최신 timestamp 우선"""

    def __init__(self, max_size: int | None = 1000):
        super().__init__(key=lambda p: (p.symbol, p.side), max_size=max_size,
                         newest_wins=True)


class BalanceBook:
    """통화별 잔고 - 필드 단위 병합, timestamp가 더 오래된 값은 덮어쓰지 않음

    통화 수가 max_size를 넘으면 가장 먼저 등록된 통화부터 제거한다.
    """

    def __init__(self, max_size: int | None = 1000):
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._balances: OrderedDict[str, BalanceEntry] = OrderedDict()
        self.timestamp: int | None = None

    def update(self, entry: BalanceEntry) -> None:
        current = self._balances.get(entry.currency)
        if current is None:
            self._balances[entry.currency] = BalanceEntry(**{
                f.name: getattr(entry, f.name) for f in fields(BalanceEntry)
            })
            if self.max_size is not None:
                while len(self._balances) > self.max_size:
                    self._balances.popitem(last=False)
        elif not _is_older(entry, current):
            for name in ("free", "used", "total"):
                value = getattr(entry, name)
                if value is not None:
                    setattr(current, name, value)
            if entry.timestamp is not None:
                current.timestamp = entry.timestamp
        if entry.timestamp is not None:
            self.timestamp = max(self.timestamp or 0, entry.timestamp)

    def get(self, currency: str) -> BalanceEntry | None:
        return self._balances.get(currency)

    def to_dict(self) -> dict[str, BalanceEntry]:
        """호출자용 복사본 - 이후 update가 반환값을 바꾸지 않음"""
        return {currency: replace(e) for currency, e in self._balances.items()}

    def __contains__(self, currency: str) -> bool:
        return currency in self._balances

    def __len__(self) -> int:
        return len(self._balances)
