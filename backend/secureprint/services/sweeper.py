import asyncio
import logging
from typing import Callable

from sqlalchemy.orm import Session

from secureprint.config import settings
from secureprint.services.lifecycle import LifecycleManager

logger = logging.getLogger(__name__)


class Sweeper:
    """Periodically expires jobs whose deadline has passed.

    Each tick drops spent print tokens, then snapshots the expired ids from
    the index and expires them one at a time. Ids held by a request are
    skipped by the snapshot; ids whose expiry fails stay indexed and are
    retried on the next tick.
    """

    def __init__(
        self,
        lifecycle: LifecycleManager,
        session_factory: Callable[[], Session],
        period_seconds: int | None = None,
    ):
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self.period_seconds = period_seconds or settings.sweeper_period_seconds
        self._running = False
        self._task: asyncio.Task | None = None
        self.stats = {"ticks": 0, "expired": 0, "skipped": 0, "errors": 0}

    def sweep_once(self) -> dict:
        now = self.lifecycle.clock()
        purged = self.lifecycle.print_tokens.purge(now)
        if purged:
            logger.debug("Purged %d spent print token(s)", purged)
        candidates = self.lifecycle.index.snapshot_expired(now)
        result = {"expired": [], "skipped": [], "errors": []}
        if not candidates:
            self.stats["ticks"] += 1
            return result

        db = self.session_factory()
        try:
            for job_id in candidates:
                try:
                    done = self.lifecycle.expire(db, job_id)
                except Exception:
                    logger.exception("Sweeper could not expire job %s", job_id)
                    result["errors"].append(job_id)
                    continue
                (result["expired"] if done else result["skipped"]).append(job_id)
        finally:
            db.close()

        self.stats["ticks"] += 1
        self.stats["expired"] += len(result["expired"])
        self.stats["skipped"] += len(result["skipped"])
        self.stats["errors"] += len(result["errors"])
        logger.info(
            "Sweep removed %d expired job(s), %d held, %d failed",
            len(result["expired"]),
            len(result["skipped"]),
            len(result["errors"]),
        )
        return result

    async def start(self):
        if self._running:
            logger.warning("Sweeper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Sweeper started, period %ss", self.period_seconds)

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Sweeper stopped")

    async def _loop(self):
        while self._running:
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(self.period_seconds)
