"""
File-based dead letter queue (NDJSON).

One JSON object per line; appends are serialized with an asyncio lock and
performed off the event loop. ``replay`` reads records back for inspection
or manual re-submission.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..models import Event


@dataclass(frozen=True)
class DLQRecord:
    """Terminal record of an event that was not delivered."""

    event_id: str
    event: dict[str, Any]
    error: str
    attempt_count: int = 0
    errors: list[str] = field(default_factory=list)
    reason: str = "retries_exhausted"
    ts: float = field(default_factory=time.time)

    @classmethod
    def from_failure(
        cls,
        event: Event,
        error: Optional[BaseException | str],
        *,
        attempt_count: int = 0,
        errors: Optional[list[str]] = None,
        reason: str = "retries_exhausted",
    ) -> "DLQRecord":
        return cls(
            event_id=event.id,
            event=event.to_wire(),
            error=describe_error(error),
            attempt_count=attempt_count,
            errors=list(errors or []),
            reason=reason,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, line: str) -> "DLQRecord":
        return cls(**json.loads(line))


class DeadLetterQueue:
    """Append-only NDJSON dead-letter store.

    Example:
        dlq = DeadLetterQueue(".dlq/tweet_events.ndjson")
        await dlq.save(DLQRecord.from_failure(event, exc, attempt_count=3))
        recs = await dlq.replay(10)
    """

    def __init__(self, path: str | Path, *, mkdirs: bool = True):
        self._path = Path(path)
        if mkdirs:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self.saved = 0

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, record: DLQRecord) -> None:
        line = record.to_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)
            self.saved += 1
        logger.debug(f"DLQ <- {record.event_id} ({record.reason}, attempts={record.attempt_count})")

    async def replay(self, max_records: int = 100, *, latest: bool = False) -> list[DLQRecord]:
        """Read up to ``max_records`` records, oldest first (or the newest ones if ``latest``)."""
        if max_records <= 0 or not self._path.exists():
            return []
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines, max_records, latest)
        out: list[DLQRecord] = []
        for ln in lines:
            try:
                out.append(DLQRecord.from_json(ln))
            except (ValueError, TypeError) as exc:
                logger.warning(f"Skipping corrupt DLQ line in {self._path}: {exc}")
        return out

    def _append(self, line: str) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line)

    def _read_lines(self, max_records: int, latest: bool) -> list[str]:
        with open(self._path, "r", encoding="utf-8") as f:
            rows = (ln for ln in f if ln.strip())
            if latest:
                return list(deque(rows, maxlen=max_records))
            out = []
            for ln in rows:
                out.append(ln)
                if len(out) >= max_records:
                    break
            return out


def describe_error(error: Optional[BaseException | str]) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)
