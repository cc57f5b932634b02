"""수신 메시지 라우팅 - 제어 프레임 우선 처리, 데이터 채널은 처리기 테이블로 분기"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from exchange_stream.errors import AuthenticationError, ExchangeError
from exchange_stream.models import ChannelKind, Envelope

if TYPE_CHECKING:
    from exchange_stream.adapters.base import ExchangeAdapter
    from exchange_stream.auth import Authenticator
    from exchange_stream.connection import Connection
    from exchange_stream.integrity_logger import IntegrityLogger
    from exchange_stream.registry import TopicRegistry

logger = logging.getLogger(__name__)

Handler = Callable[["Connection", Any], None]


class DispatchRouter:
    """어댑터가 분류한 메시지를 채널 처리기로 전달"""

    def __init__(self, adapter: ExchangeAdapter, registry: TopicRegistry,
                 authenticator: Authenticator,
                 integrity_logger: IntegrityLogger | None = None):
        self.adapter = adapter
        self.registry = registry
        self.authenticator = authenticator
        self.integrity_logger = integrity_logger
        self.handlers: dict[ChannelKind, Handler] = {}

    def register(self, kind: ChannelKind, handler: Handler) -> None:
        self.handlers[kind] = handler

    def route(self, connection: Connection, message: Any) -> None:
        envelope = self.adapter.classify(message)
        kind = envelope.kind

        if kind is ChannelKind.PONG:
            connection.last_pong = time.time()
            return
        if kind is ChannelKind.SUBSCRIBED:
            if not self.registry.acknowledge(connection, envelope.request_id):
                logger.debug(f"[라우터] 알 수 없는 ack id={envelope.request_id}")
            return
        if kind is ChannelKind.AUTH:
            self.authenticator.handle_response(connection, envelope.success, envelope.error)
            return
        if kind is ChannelKind.ERROR:
            self._handle_error(connection, envelope)
            return

        handler = self.handlers.get(kind)
        if handler is None:
            logger.debug(f"[라우터] 처리기 없는 메시지 무시: {kind.value}")
            return
        if self.integrity_logger:
            self.integrity_logger.increment_message_count(kind.value)
        handler(connection, message)

    def _handle_error(self, connection: Connection, envelope: Envelope) -> None:
        error = envelope.error or ExchangeError(f"{self.adapter.name} 에러 응답")
        if envelope.request_id is not None \
                and self.registry.reject_request(connection, envelope.request_id, error):
            return
        if isinstance(error, AuthenticationError) and connection.auth_future is not None:
            self.authenticator.handle_response(connection, False, error)
            return
        # 특정 요청에 대응하지 않는 에러는 다른 대기자에 영향 없음
        logger.warning(f"[라우터] {connection.url} 대상 없는 에러: {error!r}")
