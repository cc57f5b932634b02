"""시스템 설정 모듈 - config.yaml 로드 및 Config 데이터클래스"""

from dataclasses import dataclass, field, asdict
from pathlib import Path

import yaml


@dataclass
class Config:
    """스트리밍 엔진 설정 (config.yaml에서 로드)"""
    exchange: str = "bybit"
    market_type: str = "spot"
    symbols: list[str] = field(default_factory=lambda: ["BTC/USDT", "ETH/USDT"])
    timeframe: str = "1m"
    api_key: str = ""
    secret: str = ""
    ping_interval: float = 20.0
    pong_timeout: float = 30.0
    connect_timeout: float = 10.0
    subscribe_timeout: float = 10.0
    auth_timeout: float = 10.0
    max_connect_attempts: int = 5
    reconnect_delay: float = 1.0
    trades_limit: int = 1000
    ohlcv_limit: int = 1000
    orders_limit: int = 1000
    positions_limit: int = 1000
    balance_limit: int = 1000
    orderbook_depth: int = 50
    orderbook_gap_tolerance: int = 0
    max_buffered_deltas: int = 1000
    max_resync_attempts: int = 3
    rest_timeout: float = 10.0
    rest_max_retries: int = 3
    log_dir: str = "./logs"
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """YAML 파일에서 Config 객체 생성"""
        p = Path(path)
        if not p.exists():
            return cls()
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def to_yaml(self, path: str) -> None:
        """Config 객체를 YAML 파일로 저장"""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> dict:
        """Config를 딕셔너리로 변환"""
        return asdict(self)

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.secret)
