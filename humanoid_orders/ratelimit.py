"""Fixed-window request counters kept in the database.

Counters are shared by every instance pointing at the same database, so
a client cannot get around a limit by landing on another worker.
"""
import time
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
import structlog

from humanoid_orders.database import run_in_transaction
from humanoid_orders.errors import RateLimited
from humanoid_orders.models import RateLimitCounter, utcnow

logger = structlog.get_logger(component="ratelimit")


class RateLimiter:
    def __init__(self, session_factory, scope: str, limit: int, window_seconds: int, clock=time.time):
        self.session_factory = session_factory
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock

    def hit(self, client: str) -> int:
        """Count one request for ``client``; raise ``RateLimited`` past the limit."""
        now = self.clock()
        window_start = int(now // self.window_seconds) * self.window_seconds
        key = f"{self.scope}:{client}:{window_start}"
        expires_at = datetime.fromtimestamp(window_start + self.window_seconds, tz=timezone.utc)

        def work(db):
            bumped = db.execute(
                update(RateLimitCounter)
                .where(RateLimitCounter.key == key)
                .values(count=RateLimitCounter.count + 1)
            ).rowcount
            if not bumped:
                # A concurrent first hit loses on the primary key and is retried.
                db.add(RateLimitCounter(key=key, count=1, expires_at=expires_at))
                db.flush()
            return db.scalar(select(RateLimitCounter.count).where(RateLimitCounter.key == key))

        count = run_in_transaction(self.session_factory, work)
        if count > self.limit:
            retry_after = int(window_start + self.window_seconds - now) + 1
            logger.warning("rate_limited", scope=self.scope, client=client, count=count)
            raise RateLimited(scope=self.scope, retry_after=retry_after)
        return count

    def purge_expired(self, now=None) -> int:
        cutoff = now or utcnow()
        return run_in_transaction(
            self.session_factory,
            lambda db: db.execute(
                delete(RateLimitCounter).where(RateLimitCounter.expires_at <= cutoff)
            ).rowcount,
        )
