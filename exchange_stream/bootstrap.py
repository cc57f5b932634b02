"""REST 초기 스냅샷 부트스트랩 - 1회만 로드, 로딩 중 수신된 push 업데이트는 보류 후 병합"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)


class SnapshotBootstrap:
    """키(positions, balance 등)별 초기 스냅샷 로더"""

    def __init__(self):
        self._loaded: set[str] = set()
        self._inflight: dict[str, asyncio.Task] = {}
        self._queued: dict[str, list[Any]] = {}

    def is_loaded(self, key: str) -> bool:
        return key in self._loaded

    def is_loading(self, key: str) -> bool:
        return key in self._inflight

    def defer(self, key: str, update: Any) -> bool:
        """로딩 중이면 업데이트를 보류하고 True 반환"""
        queue = self._queued.get(key)
        if queue is None:
            return False
        queue.append(update)
        return True

    async def load(self, key: str,
                   fetch: Callable[[], Awaitable[Iterable[Any]]],
                   apply: Callable[[Any], Any]) -> None:
        """스냅샷을 정확히 한 번 로드 (동시 호출은 진행 중인 로드를 공유)"""
        if key in self._loaded:
            return
        task = self._inflight.get(key)
        if task is None:
            self._queued[key] = []
            task = asyncio.ensure_future(self._run(key, fetch, apply))
            self._inflight[key] = task
        await asyncio.shield(task)

    async def _run(self, key: str, fetch, apply) -> None:
        try:
            snapshot = await fetch()
            count = 0
            for item in snapshot:
                apply(item)
                count += 1
            self._loaded.add(key)
            logger.info(f"[스냅샷] {key} 초기 로드 완료 ({count}건)")
        except Exception as e:
            logger.error(f"[스냅샷] {key} 초기 로드 실패: {e}")
            raise
        finally:
            # 보류된 push는 스냅샷 위에 적용 (타임스탬프 비교는 캐시가 담당)
            queued = self._queued.pop(key, [])
            for item in queued:
                apply(item)
            self._inflight.pop(key, None)
            if queued:
                logger.debug(f"[스냅샷] {key} 보류 업데이트 {len(queued)}건 적용")

    def reset(self, key: str | None = None) -> None:
        """재연결 후 다시 로드하도록 완료 상태 제거"""
        if key is None:
            self._loaded.clear()
        else:
            self._loaded.discard(key)
