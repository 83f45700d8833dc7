import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(frozen=True)
class ExpiryEntry:
    expires_at: float  # epoch seconds, server clock
    token: str
    file_path: str | None = None
    mime_type: str | None = None
    original_name: str | None = None


class ExpiryIndex:
    """Process-local map of live jobs to their expiry metadata.

    Not persisted: a restart starts with an empty index. Request handlers
    hold a job (``hold``/``mark_active``) while they work on it, and
    ``snapshot_expired`` never reports a held job.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, ExpiryEntry] = {}
        self._active: Counter[str] = Counter()

    def register(self, job_id: str, entry: ExpiryEntry) -> None:
        with self._lock:
            self._entries[job_id] = entry

    def get(self, job_id: str) -> ExpiryEntry | None:
        with self._lock:
            return self._entries.get(job_id)

    def remove(self, job_id: str) -> ExpiryEntry | None:
        with self._lock:
            return self._entries.pop(job_id, None)

    def mark_active(self, job_id: str) -> None:
        with self._lock:
            self._active[job_id] += 1

    def unmark_active(self, job_id: str) -> None:
        with self._lock:
            self._active[job_id] -= 1
            if self._active[job_id] <= 0:
                del self._active[job_id]

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return self._active[job_id] > 0

    @contextmanager
    def hold(self, job_id: str):
        self.mark_active(job_id)
        try:
            yield
        finally:
            self.unmark_active(job_id)

    def snapshot_expired(self, now: float) -> list[str]:
        with self._lock:
            return [
                job_id
                for job_id, entry in self._entries.items()
                if entry.expires_at <= now and self._active[job_id] <= 0
            ]

    def expired_entries(self, now: float) -> list[tuple[str, ExpiryEntry]]:
        with self._lock:
            return [(job_id, entry) for job_id, entry in self._entries.items() if entry.expires_at <= now]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._active.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._entries
