"""
Per-job debug log.

Append-only list of DebugEntry objects; the Job Controller persists it on every
state change and it is the authoritative post-mortem for a job.
"""
import time
from typing import Any, Dict, List, Optional

from archivist.models.extraction import DebugEntry
from archivist.utils.logger import get_logger

logger = get_logger(__name__)


class DebugLog:
    def __init__(self, job_id: Optional[str] = None, entries: Optional[List[DebugEntry]] = None):
        self.job_id = job_id
        self._entries: List[DebugEntry] = list(entries or [])
        self._start = time.monotonic()

    def add(self, stage: str, message: str, data: Optional[Dict[str, Any]] = None) -> DebugEntry:
        entry = DebugEntry(
            stage=stage,
            message=message,
            elapsed_ms=int((time.monotonic() - self._start) * 1000),
            data=data,
        )
        self._entries.append(entry)
        logger.debug(f"[{self.job_id or '-'}] {stage}: {message}")
        return entry

    def restore(self, entry: Dict[str, Any]) -> None:
        """Re-append a persisted entry when a parked job resumes."""
        self._entries.append(DebugEntry.model_validate(entry))

    @property
    def entries(self) -> List[DebugEntry]:
        return list(self._entries)

    def for_stage(self, *stages: str) -> List[DebugEntry]:
        return [e for e in self._entries if e.stage in stages]

    def to_json(self) -> List[Dict[str, Any]]:
        """Serialized form stored on the job row."""
        return [e.model_dump(mode="json") for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
