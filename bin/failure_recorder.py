"""
Thread-safe failure list for one wave, flushed to a per-shard failure log.

Each line of a failure log has the same "<url> <destination>" shape as a
shard list, so a failure log can be fed back in as input.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class FailureRecord:
    resource: str
    destination: str

    def to_line(self) -> str:
        return f"{self.resource} {self.destination}"


class FailureLogError(OSError):
    """Failure log could not be written; the dropped records are attached."""

    def __init__(self, path: str, records: list[FailureRecord], cause: OSError):
        super().__init__(f"Failed to write failure log {path}: {cause}")
        self.path = path
        self.records = records
        self.cause = cause


class FailureRecorder:
    """Collects failed items from concurrent workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[FailureRecord] = []

    def record(self, resource: str, destination: str) -> None:
        with self._lock:
            self._records.append(FailureRecord(resource, destination))

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._records)

    def snapshot(self) -> list[FailureRecord]:
        with self._lock:
            return list(self._records)

    def flush(self, path: str) -> int:
        """
        Write all pending records to `path` and clear them.

        The lock is held for the whole write so a record added meanwhile
        lands in the next flush. The file is always rewritten, so an empty
        flush leaves an empty log behind.

        Args:
            path: Failure log path

        Returns:
            Number of records written

        Raises:
            FailureLogError: If the file can't be opened or written. The
                in-memory list is cleared either way.
        """
        with self._lock:
            records, self._records = self._records, []
            try:
                with open(path, "w", encoding="utf-8") as f:
                    for rec in records:
                        f.write(rec.to_line() + "\n")
            except OSError as e:
                raise FailureLogError(path, records, e) from e
            return len(records)


def failure_log_path(fail_path: str, name: str) -> str:
    return os.path.join(fail_path, name + ".txt")
