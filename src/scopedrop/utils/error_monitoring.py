import copy
import json
import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set

import pytz


class ResilienceError(Exception):
    """Base class for failures raised by the resilience layer"""
    pass


@dataclass(frozen=True)
class ErrorRecord:
    """A single failure captured by the diagnostic log"""
    source: str
    error: Any
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'error': self.error,
            'timestamp': self.timestamp.isoformat(),
        }


def describe_error(error: Any) -> Any:
    """
    Coerce a failure payload into something json.dumps accepts.

    Exceptions become a small dict with their type and message (and the
    chained cause, if any). JSON-compatible values are deep-copied so the
    caller cannot mutate what was logged. Everything else falls back to its
    string form.
    """
    if isinstance(error, BaseException):
        described: Dict[str, Any] = {
            'type': type(error).__name__,
            'message': _safe_str(error),
        }
        cause = error.__cause__ or getattr(error, 'cause', None)
        if isinstance(cause, BaseException) and cause is not error:
            described['cause'] = {
                'type': type(cause).__name__,
                'message': _safe_str(cause),
            }
        return described

    try:
        return json.loads(json.dumps(error))
    except (TypeError, ValueError, RecursionError):
        return _safe_str(error)


def _safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return object.__repr__(value)


class DiagnosticLog:
    """
    Process-wide, append-only store of external-call failures.

    Every component that talks to something outside the process records its
    failures here instead of raising them into the UI layer. The log is
    bounded; once `capacity` is reached the oldest record is evicted.
    """

    def __init__(self, capacity: Optional[int] = 100, timezone: Any = pytz.utc) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive or None")
        self.capacity = capacity
        self.timezone = timezone
        self._records: Deque[ErrorRecord] = deque(maxlen=capacity)
        self._evicted = 0
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def record(self, source: str, error: Any) -> Optional[ErrorRecord]:
        """Append a failure. Never raises."""
        try:
            entry = ErrorRecord(
                source=_safe_str(source),
                error=describe_error(error),
                timestamp=datetime.now(self.timezone),
            )
            with self._lock:
                if self.capacity is not None and len(self._records) == self.capacity:
                    self._evicted += 1
                self._records.append(entry)
        except Exception:
            # The log is the terminal sink; there is nowhere left to send this.
            self.logger.exception("Failed to record diagnostic entry for %r", source)
            return None

        try:
            self.logger.error(json.dumps({
                'event': 'error',
                'source': entry.source,
                'error': entry.error,
                'timestamp': entry.timestamp.isoformat(),
            }, default=str))
        except Exception:
            pass
        return entry

    def list(self) -> List[ErrorRecord]:
        """Snapshot of all records in insertion order."""
        with self._lock:
            snapshot = list(self._records)
        return [replace(r, error=copy.deepcopy(r.error)) for r in snapshot]

    def clear(self) -> None:
        with self._lock:
            self._records = deque(maxlen=self.capacity)
            self._evicted = 0
        self.logger.info(json.dumps({'event': 'diagnostic_log_cleared'}))

    def filter_by_source(self, fragment: str) -> List[ErrorRecord]:
        return [r for r in self.list() if fragment in r.source]

    def sources_with_errors(self) -> Set[str]:
        with self._lock:
            return {r.source for r in self._records}

    def get_error_statistics(self) -> Dict[str, Any]:
        counts: Dict[str, int] = defaultdict(int)
        with self._lock:
            for r in self._records:
                counts[r.source] += 1
            evicted = self._evicted
        return {
            'total_errors': sum(counts.values()),
            'sources': dict(counts),
            'evicted': evicted,
        }

    def export(self, format: str = "json") -> str:
        records = self.list()
        if format.lower() == 'csv':
            lines = ["source,timestamp,error"]
            for r in records:
                err = json.dumps(r.error, default=str).replace('\n', ' ').replace(',', ';')
                lines.append(f"{r.source},{r.timestamp.isoformat()},{err}")
            return "\n".join(lines)
        return json.dumps([r.to_dict() for r in records], default=str)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
