"""
Usage recorder

每次尝试（成功、失败、本地限流拒绝）都写入一条 UsageRecord。

Sinks:
- InMemoryUsageRecorder: 有界内存队列，可按主体/时间范围查询
- JsonlUsageRecorder: 按日期分文件存储在 {log_dir}/{YYYY-MM-DD}.jsonl
- NullUsageRecorder: 丢弃所有记录

Recording is best-effort: the service logs recorder failures and carries on.
"""

import asyncio
import json
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from pathlib import Path

from .config import UsageConfig
from .errors import ConfigError
from .models import UsageRecord


class UsageRecorder(ABC):
    """Sink for per-attempt usage records."""

    @abstractmethod
    async def record(self, record: UsageRecord) -> None:
        """Persist one record. May raise; callers treat failures as non-fatal."""

    async def aclose(self) -> None:
        return None


class NullUsageRecorder(UsageRecorder):
    """Discards every record."""

    async def record(self, record: UsageRecord) -> None:
        return None


class InMemoryUsageRecorder(UsageRecorder):
    """内存使用日志记录器，只保留最近 max_records 条"""

    def __init__(self, max_records: int = 10_000) -> None:
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        self.max_records = max_records
        self._records: deque[UsageRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    async def record(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def get_records_by_subject(self, subject_id: str) -> list[UsageRecord]:
        """获取指定主体的所有记录"""
        with self._lock:
            return [r for r in self._records if r.subject_id == subject_id]

    def get_records_by_request(self, request_id: str) -> list[UsageRecord]:
        """All attempts of one request, in order."""
        with self._lock:
            return [r for r in self._records if r.request_id == request_id]

    def get_records_by_time_range(
        self,
        start_time: datetime,
        end_time: datetime,
        subject_id: str | None = None,
    ) -> list[UsageRecord]:
        """
        获取时间范围内的记录

        Args:
            start_time: 开始时间（包含）
            end_time: 结束时间（包含）
            subject_id: 可选，只返回该主体的记录
        """
        with self._lock:
            return [
                r for r in self._records
                if start_time <= r.timestamp <= end_time
                and (subject_id is None or r.subject_id == subject_id)
            ]

    def get_all_records(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)

    def get_subject_total_tokens(self, subject_id: str) -> tuple[int, int]:
        """
        获取主体的总Token数

        Returns:
            (prompt_tokens, completion_tokens)
        """
        records = self.get_records_by_subject(subject_id)
        return (
            sum(r.prompt_tokens for r in records),
            sum(r.completion_tokens for r in records),
        )

    def summary(self) -> dict:
        """Counts and token totals over all records."""
        records = self.get_all_records()
        successes = [r for r in records if r.success]
        return {
            "attempts": len(records),
            "successes": len(successes),
            "failures": len(records) - len(successes),
            "total_tokens": sum(r.total_tokens for r in records),
            "requests": len({r.request_id for r in records}),
        }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonlUsageRecorder(UsageRecorder):
    """JSONL 使用日志，按日期分文件"""

    def __init__(self, log_dir: str | Path = "logs/usage"):
        self.log_dir = Path(log_dir)
        self._lock = asyncio.Lock()

    def path_for(self, timestamp: datetime) -> Path:
        return self.log_dir / f"{timestamp.strftime('%Y-%m-%d')}.jsonl"

    async def record(self, record: UsageRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False) + "\n"
        path = self.path_for(record.timestamp)
        async with self._lock:
            await asyncio.to_thread(self._append, path, line)

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)


def build_recorder(config: UsageConfig) -> UsageRecorder:
    """Create the sink named by the ``usage`` config section."""
    if config.sink == "memory":
        return InMemoryUsageRecorder(config.max_records)
    if config.sink == "jsonl":
        return JsonlUsageRecorder(config.log_dir)
    if config.sink == "none":
        return NullUsageRecorder()
    raise ConfigError(f"Unknown usage sink: {config.sink}")
