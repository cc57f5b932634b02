"""REST 조회 모듈 - 오더북/포지션/잔고 초기 스냅샷"""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from exchange_stream.errors import NetworkError, RateLimitExceeded

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {418, 429, 500, 502, 503, 504}


class RestClient:
    """aiohttp 기반 GET 조회 (재시도 + 지수 백오프)"""

    def __init__(self, timeout: float = 10.0, max_retries: int = 3,
                 retry_delay: float = 1.0):
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    async def fetch(self, url: str, params: dict | None = None,
                    headers: dict | None = None) -> dict:
        """JSON 응답 반환. 4xx 본문은 그대로 반환하여 어댑터가 에러 코드 매핑"""
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(
                        url,
                        params=params,
                        headers=headers,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as resp:
                        if resp.status in RETRYABLE_STATUS:
                            logger.warning(f"[REST] {url} HTTP {resp.status}")
                            if resp.status in (418, 429):
                                last_error = RateLimitExceeded(f"{url} HTTP {resp.status}")
                            else:
                                last_error = NetworkError(f"{url} HTTP {resp.status}")
                        else:
                            return await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(
                    f"[REST] {url} 조회 실패 (시도 {attempt+1}/{self.max_retries}): {e}"
                )
                last_error = NetworkError(f"{url} 조회 실패: {e}")
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * 2 ** attempt)
        raise last_error
