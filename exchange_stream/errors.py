"""예외 계층 및 거래소 에러 코드 매핑"""

from __future__ import annotations


class ExchangeStreamError(Exception):
    """모든 스트리밍 엔진 예외의 베이스"""


class ExchangeError(ExchangeStreamError):
    """거래소가 거부한 요청 (요청한 호출자에게만 전달)"""


class AuthenticationError(ExchangeError):
    """로그인 거부 - 자격증명이 바뀌기 전까지 private 채널 사용 불가"""


class BadRequest(ExchangeError):
    pass


class NotSupported(ExchangeError):
    """서버에 대응 채널이 없는 조합 - 프레임 전송 전에 즉시 실패"""


class InvalidOrder(ExchangeError):
    pass


class OrderNotFound(InvalidOrder):
    pass


class InsufficientFunds(ExchangeError):
    pass


class UnsubscribedError(ExchangeError):
    """호출자가 구독을 해제하여 대기 중인 결과가 취소됨"""


class NetworkError(ExchangeStreamError):
    """전송 계층 실패 - 재연결 후 재구독하면 복구 가능"""


class RequestTimeout(NetworkError):
    pass


class RateLimitExceeded(NetworkError):
    pass


class ErrorMapper:
    """거래소 에러 코드/메시지 → 예외 클래스 매핑 (exact 우선, broad 부분일치)"""

    def __init__(self, exact: dict[str, type[ExchangeStreamError]] | None = None,
                 broad: dict[str, type[ExchangeStreamError]] | None = None,
                 default: type[ExchangeStreamError] = ExchangeError):
        self.exact = dict(exact or {})
        self.broad = dict(broad or {})
        self.default = default

    def lookup(self, code: str | int | None, message: str | None) -> type[ExchangeStreamError]:
        if code is not None:
            cls = self.exact.get(str(code))
            if cls is not None:
                return cls
        if message:
            for fragment, cls in self.broad.items():
                if fragment in message:
                    return cls
        return self.default

    def map(self, code: str | int | None, message: str | None,
            feedback: str = "") -> ExchangeStreamError:
        """에러 인스턴스 생성 (raise 하지 않음)"""
        cls = self.lookup(code, message)
        text = feedback or f"code={code} message={message}"
        return cls(text)
