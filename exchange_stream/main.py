"""실행 진입점 - 설정된 심볼의 오더북/체결 스트림 구독"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

from exchange_stream.adapters.base import ExchangeAdapter
from exchange_stream.adapters.binance import BinanceAdapter
from exchange_stream.adapters.bybit import BybitAdapter
from exchange_stream.config import Config
from exchange_stream.errors import ExchangeError, NetworkError, NotSupported
from exchange_stream.integrity_logger import IntegrityLogger
from exchange_stream.session import StreamSession

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
STATS_INTERVAL = 60

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)
logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[ExchangeAdapter]] = {
    "binance": BinanceAdapter,
    "bybit": BybitAdapter,
}


def create_adapter(name: str, market_type: str = "spot",
                   markets: dict[str, str] | None = None) -> ExchangeAdapter:
    cls = ADAPTERS.get(name.lower())
    if cls is None:
        raise NotSupported(f"지원하지 않는 거래소: {name}")
    return cls(market_type, markets)


async def watch_order_book_loop(session: StreamSession, symbol: str, levels: int = 5) -> None:
    """오더북 상위 호가 출력 (연결 끊김 시 다음 호출이 재연결)"""
    delay = session.config.reconnect_delay
    while True:
        try:
            book = await session.watch_order_book(symbol, levels)
        except NetworkError as e:
            logger.warning(f"[오더북] {symbol} 연결 문제, {delay}초 후 재구독: {e}")
            await asyncio.sleep(delay)
            continue
        except ExchangeError as e:
            logger.error(f"[오더북] {symbol} 거래소 에러: {e}")
            await asyncio.sleep(delay)
            continue
        best_bid = book.bids[0] if book.bids else None
        best_ask = book.asks[0] if book.asks else None
        logger.info(f"[오더북] {symbol} bid={best_bid} ask={best_ask} nonce={book.nonce}")


async def watch_trades_loop(session: StreamSession, symbol: str) -> None:
    delay = session.config.reconnect_delay
    while True:
        try:
            trades = await session.watch_trades(symbol, limit=1)
        except (NetworkError, ExchangeError) as e:
            logger.warning(f"[체결] {symbol} 구독 실패, {delay}초 후 재시도: {e}")
            await asyncio.sleep(delay)
            continue
        for trade in trades:
            logger.info(f"[체결] {symbol} {trade.side} {trade.amount}@{trade.price}")


async def main(config_path: str = "config.yaml") -> None:
    config = Config.from_yaml(config_path)

    # 디렉토리 생성 (로깅 FileHandler보다 먼저)
    Path(config.log_dir).mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(Path(config.log_dir) / "stream.log", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(file_handler)
    root.setLevel(config.log_level.upper())

    integrity_logger = IntegrityLogger(config.log_dir)
    adapter = create_adapter(config.exchange, config.market_type)
    session = StreamSession(adapter, config, integrity_logger=integrity_logger)

    logger.info(f"=== {config.exchange} 스트리밍 시작 ===")
    logger.info(f"심볼: {config.symbols}")

    async def periodic_log():
        while True:
            await asyncio.sleep(STATS_INTERVAL)
            await integrity_logger.write_periodic_log()

    tasks = [periodic_log()]
    for symbol in config.symbols:
        tasks.append(watch_order_book_loop(session, symbol))
        tasks.append(watch_trades_loop(session, symbol))

    # graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler():
        logger.info("종료 신호 수신, 연결 정리 중...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    gathered = asyncio.gather(*tasks, return_exceptions=True)
    await asyncio.wait(
        [asyncio.create_task(shutdown_event.wait()), gathered],
        return_when=asyncio.FIRST_COMPLETED,
    )
    gathered.cancel()

    await session.close()
    try:
        await integrity_logger.write_periodic_log()
    except OSError as e:
        logger.error(f"마지막 통계 기록 실패: {e}")
    logger.info("=== 스트리밍 종료 ===")


def run() -> None:
    config_file = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    asyncio.run(main(config_file))


if __name__ == "__main__":
    run()
