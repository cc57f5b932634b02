"""WebSocket 로그인 핸드셰이크 - 연결당 1회, 동시 호출은 같은 결과 공유"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import TYPE_CHECKING

from exchange_stream.errors import AuthenticationError, NetworkError, RequestTimeout

if TYPE_CHECKING:
    from exchange_stream.adapters.base import ExchangeAdapter
    from exchange_stream.config import Config
    from exchange_stream.connection import Connection

logger = logging.getLogger(__name__)


def hmac_sha256(secret: str, payload: str) -> str:
    """HMAC-SHA256 hex 서명"""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class Authenticator:
    """연결별 로그인 상태 관리"""

    def __init__(self, adapter: ExchangeAdapter, config: Config):
        self.adapter = adapter
        self.config = config

    def check_credentials(self) -> None:
        if not self.config.has_credentials():
            raise AuthenticationError(f"{self.adapter.name} private 채널에는 api_key/secret 필요")

    async def authenticate(self, connection: Connection) -> bool:
        """첫 호출만 로그인 프레임 전송, 성공 결과는 연결에 캐시"""
        self.check_credentials()
        fut = connection.auth_future
        if fut is None:
            fut = asyncio.get_running_loop().create_future()
            connection.auth_future = fut
            frame = self.adapter.build_login(
                self.config.api_key, self.config.secret, int(time.time() * 1000)
            )
            logger.info(f"[인증] {connection.url} 로그인 요청")
            try:
                await connection.send(frame)
            except NetworkError:
                # 연결 실패 시 fut에는 이미 예외가 설정됨
                pass
        try:
            return await asyncio.wait_for(asyncio.shield(fut), self.config.auth_timeout)
        except asyncio.TimeoutError:
            error = RequestTimeout(f"{connection.url} 로그인 응답 없음 ({self.config.auth_timeout}초)")
            if not fut.done():
                fut.set_exception(error)
            if connection.auth_future is fut:
                connection.auth_future = None
            raise error from None

    def handle_response(self, connection: Connection, success: bool,
                        error: Exception | None = None) -> None:
        """로그인 응답 처리: 성공 시 캐시, 실패 시 재시도 가능하도록 상태 제거"""
        fut = connection.auth_future
        if fut is None or fut.done():
            logger.debug(f"[인증] {connection.url} 대기 중인 로그인 없음, 응답 무시")
            return
        if success:
            fut.set_result(True)
            logger.info(f"[인증] {connection.url} 로그인 성공")
            return
        if not isinstance(error, AuthenticationError):
            error = AuthenticationError(f"{self.adapter.name} 로그인 거부: {error}")
        connection.auth_future = None
        fut.set_exception(error)
        logger.error(f"[인증] {connection.url} 로그인 실패: {error}")
