import threading
from collections import deque
from dataclasses import dataclass

from secureprint.config import settings
from secureprint.errors import InvalidPrintToken, RateLimited
from secureprint.utils.security import generate_token, tokens_match


@dataclass
class PrintGrant:
    token: str
    expires_at: float
    client_ip: str
    used: bool = False


class PrintTokenStore:
    """Single-use print tokens, at most one outstanding per job.

    Issuing a new token for a job replaces the previous one. Issuance is
    rate limited per client IP over a sliding window. Like the expiry
    index this lives in process memory only.
    """

    def __init__(self, ttl_seconds: int | None = None, rate_limit: int | None = None,
                 rate_window_seconds: int | None = None):
        self.ttl_seconds = ttl_seconds or settings.print_token_ttl_seconds
        self.rate_limit = rate_limit or settings.print_token_rate_limit
        self.rate_window_seconds = rate_window_seconds or settings.print_token_rate_window_seconds
        self._lock = threading.Lock()
        self._grants: dict[str, PrintGrant] = {}
        self._issued: dict[str, deque[float]] = {}

    def _recent(self, client_ip: str, now: float) -> deque[float]:
        stamps = self._issued.setdefault(client_ip, deque())
        while stamps and stamps[0] <= now - self.rate_window_seconds:
            stamps.popleft()
        return stamps

    def issue(self, job_id: str, client_ip: str, now: float) -> PrintGrant:
        with self._lock:
            stamps = self._recent(client_ip, now)
            if len(stamps) >= self.rate_limit:
                raise RateLimited()
            stamps.append(now)
            grant = PrintGrant(token=generate_token(), expires_at=now + self.ttl_seconds, client_ip=client_ip)
            self._grants[job_id] = grant
            return grant

    def consume(self, job_id: str, token: str | None, now: float) -> None:
        """Burn the job's print token. Raises :class:`InvalidPrintToken` unless it is live and unused."""
        with self._lock:
            grant = self._grants.get(job_id)
            if grant is None or not tokens_match(grant.token, token):
                raise InvalidPrintToken()
            if now >= grant.expires_at:
                del self._grants[job_id]
                raise InvalidPrintToken("Print token has expired")
            if grant.used:
                raise InvalidPrintToken("Print token has already been used")
            grant.used = True

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._grants.pop(job_id, None)

    def purge(self, now: float) -> int:
        """Drop used or expired grants and stale rate-limit stamps."""
        with self._lock:
            stale = [job_id for job_id, g in self._grants.items() if g.used or now >= g.expires_at]
            for job_id in stale:
                del self._grants[job_id]
            for client_ip in list(self._issued):
                if not self._recent(client_ip, now):
                    del self._issued[client_ip]
            return len(stale)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._grants

    def __len__(self) -> int:
        with self._lock:
            return len(self._grants)
