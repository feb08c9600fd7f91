"""
Invocation log for extraction calls.

Every attempt made by the extraction client is recorded here. The log is
the audit trail of what was asked and answered, and the source that
``ReplayCaller`` serves recorded answers from.

On disk, ``JsonInvocationLog`` keeps one JSON-lines file per logical
request (named by the request key) with a line per attempt, plus an
``index.jsonl`` summarising each request for quick browsing.
"""

import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable

from job_etl.models import InvocationRecord, InvocationStatus
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)

PROMPT_PREVIEW_LENGTH = 100


@runtime_checkable
class InvocationLog(Protocol):
    """Storage for invocation records."""

    async def record(self, record: InvocationRecord) -> None:
        ...

    async def find(self, request_key: str) -> Optional[InvocationRecord]:
        """Most recent successful record for a request key."""
        ...


def _latest_success(records: List[InvocationRecord]) -> Optional[InvocationRecord]:
    for record in reversed(records):
        if record.status == InvocationStatus.SUCCESS:
            return record
    return None


class InMemoryInvocationLog:
    """Process-local invocation log."""

    def __init__(self) -> None:
        self._records: Dict[str, List[InvocationRecord]] = {}

    async def record(self, record: InvocationRecord) -> None:
        self._records.setdefault(record.request_key, []).append(record)

    async def find(self, request_key: str) -> Optional[InvocationRecord]:
        return _latest_success(self._records.get(request_key, []))

    @property
    def records(self) -> List[InvocationRecord]:
        """Every recorded attempt in insertion order per key."""
        return [r for attempts in self._records.values() for r in attempts]

    def __len__(self) -> int:
        return sum(len(attempts) for attempts in self._records.values())


class JsonInvocationLog:
    """
    File-backed invocation log. Both files are append-only JSON lines.

    Layout::

        <directory>/index.jsonl         one summary per attempt; the last line per key wins
        <directory>/<request_key>.jsonl one line per attempt for that request

    File work runs in the default executor so concurrent extractions do
    not block the event loop.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.index_path = self.directory / "index.jsonl"
        self._attempt_counts: Optional[Dict[str, int]] = None
        self._write_lock = asyncio.Lock()

    def _record_path(self, request_key: str) -> Path:
        return self.directory / f"{request_key}.jsonl"

    @staticmethod
    def _read_lines(path: Path) -> List[dict]:
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    @staticmethod
    def _append_line(path: Path, payload: dict) -> None:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload) + "\n")

    def load_index(self) -> Dict[str, dict]:
        """Latest summary per request key; an absent index is an empty one."""
        index: Dict[str, dict] = {}
        for entry in self._read_lines(self.index_path):
            index[entry.pop("request_key")] = entry
        return index

    def _write(self, record: InvocationRecord) -> None:
        if self._attempt_counts is None:
            self._attempt_counts = {key: entry["attempts"] for key, entry in self.load_index().items()}
        attempts = self._attempt_counts.get(record.request_key, 0) + 1
        self._attempt_counts[record.request_key] = attempts

        self._append_line(self._record_path(record.request_key), record.model_dump(mode="json"))
        self._append_line(
            self.index_path,
            {
                "request_key": record.request_key,
                "action": record.action,
                "model": record.model_name,
                "prompt_preview": record.user_prompt[:PROMPT_PREVIEW_LENGTH],
                "status": record.status.value,
                "attempts": attempts,
                "timestamp": record.created_at.isoformat(),
            },
        )

    async def record(self, record: InvocationRecord) -> None:
        loop = asyncio.get_running_loop()
        async with self._write_lock:
            await loop.run_in_executor(None, self._write, record)

        logger.debug(
            f"Recorded invocation {record.request_key}",
            extra={"action": record.action, "status": record.status.value},
        )

    async def find(self, request_key: str) -> Optional[InvocationRecord]:
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, self._read_lines, self._record_path(request_key))
        return _latest_success([InvocationRecord.model_validate(item) for item in raw])
