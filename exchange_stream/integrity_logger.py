"""스트림 무결성 로깅 모듈 - 갭, 재연결, 재동기화, 메시지 카운트"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class IntegrityLogger:
    """스트림 무결성 로깅"""

    MAX_GAP_BUFFER = 10000  # 갭 기록 최대 보관 수

    def __init__(self, log_dir: Path | str):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._gaps: list[dict] = []
        self._reconnects: list[dict] = []
        self._resyncs: list[dict] = []
        self._message_counts: dict[str, int] = defaultdict(int)

    def record_gap(self, symbol: str, expected_id: int, actual_id: int,
                   timestamp: float) -> None:
        """시퀀스 갭 기록"""
        if len(self._gaps) >= self.MAX_GAP_BUFFER:
            self._gaps = self._gaps[-self.MAX_GAP_BUFFER // 2:]
        self._gaps.append({
            "timestamp": timestamp,
            "symbol": symbol,
            "expected_id": expected_id,
            "actual_id": actual_id,
        })

    def record_reconnect(self, url: str, timestamp: float, reason: str) -> None:
        """연결 종료/재연결 이벤트 기록"""
        self._reconnects.append({
            "timestamp": timestamp,
            "url": url,
            "reason": reason,
        })

    def record_resync(self, symbol: str, status: str, timestamp: float) -> None:
        """오더북 재동기화 상태 기록 (requested / succeeded / failed)"""
        self._resyncs.append({
            "timestamp": timestamp,
            "symbol": symbol,
            "status": status,
        })
        if status == "failed":
            logger.error(f"[재동기화] {symbol} 실패 기록")

    def increment_message_count(self, channel: str) -> None:
        """채널별 메시지 수신 카운트 증가"""
        self._message_counts[channel] += 1

    def get_periodic_stats(self) -> dict:
        """현재 주기 통계 반환"""
        now = datetime.now(timezone.utc)
        return {
            "timestamp": now.isoformat(),
            "gaps": list(self._gaps),
            "gap_count": len(self._gaps),
            "reconnect_count": len(self._reconnects),
            "resync_count": len(self._resyncs),
            "resync_failures": sum(1 for r in self._resyncs if r["status"] == "failed"),
            "message_counts": dict(self._message_counts),
        }

    async def write_periodic_log(self) -> Path:
        """주기적 통계 JSON 로그 작성 후 주기 통계 리셋"""
        stats = self.get_periodic_stats()
        now = datetime.now(timezone.utc)
        log_file = self.log_dir / f"stream_stats_{now.strftime('%Y%m%d_%H%M')}.json"
        with open(log_file, "w") as f:
            json.dump(stats, f, indent=2, default=str)
        self._gaps.clear()
        self._reconnects.clear()
        self._resyncs.clear()
        self._message_counts.clear()
        logger.info(f"[로그] {log_file}")
        return log_file
