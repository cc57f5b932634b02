"""대기 호출 테이블 - message hash별 다중 대기자 브로드캐스트"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)


class FutureTable:
    """message hash → 대기 중인 Future 목록

    resolve는 그 시점에 등록된 모든 대기자를 깨우고 목록을 비운다.
    이후 등록되는 대기자는 다음 resolve를 기다린다 (스트리밍 의미론).
    hash별 세대(generation) 카운터는 resolve 횟수를 기록한다.
    """

    def __init__(self):
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._generation: dict[str, int] = defaultdict(int)

    def future(self, message_hash: str) -> asyncio.Future:
        """다음 resolve를 기다리는 Future 등록"""
        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(message_hash, []).append(fut)
        fut.add_done_callback(lambda f: self._discard(message_hash, f))
        return fut

    def _discard(self, message_hash: str, fut: asyncio.Future) -> None:
        """취소/완료된 대기자 제거 (다른 대기자에는 영향 없음)"""
        waiters = self._waiters.get(message_hash)
        if not waiters:
            return
        try:
            waiters.remove(fut)
        except ValueError:
            return
        if not waiters:
            del self._waiters[message_hash]

    def resolve(self, value, message_hash: str) -> int:
        """hash의 모든 대기자에게 value 전달, 깨운 대기자 수 반환"""
        waiters = self._waiters.pop(message_hash, [])
        self._generation[message_hash] += 1
        count = 0
        for fut in waiters:
            if not fut.done():
                fut.set_result(value)
                count += 1
        return count

    def reject(self, error: BaseException, message_hash: str | None = None) -> int:
        """hash(없으면 전체)의 대기자에게 예외 전달"""
        if message_hash is None:
            hashes = list(self._waiters)
        else:
            hashes = [message_hash]
        count = 0
        for h in hashes:
            for fut in self._waiters.pop(h, []):
                if not fut.done():
                    fut.set_exception(error)
                    count += 1
        if count:
            logger.debug(f"[대기자] {count}건 reject: {type(error).__name__} {error}")
        return count

    def reject_futures(self, error: BaseException, futures: list[asyncio.Future]) -> int:
        """특정 호출이 등록한 대기자만 reject"""
        count = 0
        for fut in futures:
            if not fut.done():
                fut.set_exception(error)
                count += 1
        return count

    def has_waiters(self, message_hash: str) -> bool:
        return any(not f.done() for f in self._waiters.get(message_hash, []))

    def generation(self, message_hash: str) -> int:
        return self._generation[message_hash]

    def find_message_hashes(self, prefix: str) -> list[str]:
        """prefix로 시작하는 대기 중 hash 목록"""
        return [h for h in self._waiters if h.startswith(prefix)]

    def __len__(self) -> int:
        return sum(len(w) for w in self._waiters.values())
