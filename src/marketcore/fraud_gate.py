"""Order velocity checks run before checkout.

The gate is advisory: with the default ``InMemoryVelocityStore`` the counts
live in one process and are lost on restart. Deployments running several
instances can pass a shared ``VelocityStore`` implementation instead.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import structlog

from .errors import RateExceededError

logger = structlog.get_logger(__name__)


class VelocityStore(Protocol):
    def record(self, key: str, at: datetime) -> None: ...

    def query(self, key: str, since: datetime) -> list[datetime]:
        """Timestamps recorded for key strictly after since."""
        ...

    def lock(self) -> threading.Lock:
        """Lock that makes a query-then-record sequence atomic."""
        ...


class InMemoryVelocityStore:
    """Process-local sliding-window timestamps."""

    def __init__(self) -> None:
        self._entries: dict[str, list[datetime]] = defaultdict(list)
        self._lock = threading.Lock()

    def record(self, key: str, at: datetime) -> None:
        self._entries[key].append(at)

    def query(self, key: str, since: datetime) -> list[datetime]:
        recent = [t for t in self._entries.get(key, []) if t > since]
        # Drop expired entries so long-lived keys don't grow without bound.
        if key in self._entries:
            self._entries[key] = recent
        return list(recent)

    def lock(self) -> threading.Lock:
        return self._lock


@dataclass(frozen=True)
class VelocityLimit:
    scope: str
    max_orders: int
    window: timedelta


class FraudGate:
    """Per-IP and per-user order frequency limits."""

    def __init__(
        self,
        store: VelocityStore | None = None,
        ip_limit: int = 10,
        ip_window: timedelta = timedelta(hours=24),
        user_limit: int = 5,
        user_window: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store or InMemoryVelocityStore()
        self.ip_limit = VelocityLimit("ip", ip_limit, ip_window)
        self.user_limit = VelocityLimit("user", user_limit, user_window)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_and_record(self, ip: str, user_id: str) -> None:
        """
        Admit one order attempt or reject it.

        Raises:
            RateExceededError: If either window already holds its maximum.
                Nothing is recorded for a rejected attempt.
        """
        now = self._clock()
        ip_key = f"ip:{ip}"
        user_key = f"user:{user_id}"

        with self.store.lock():
            for key, limit in ((ip_key, self.ip_limit), (user_key, self.user_limit)):
                # now - entry < window  <=>  entry > now - window
                recent = self.store.query(key, now - limit.window)
                if len(recent) >= limit.max_orders:
                    logger.warning(
                        "order_velocity_exceeded",
                        scope=limit.scope,
                        ip=ip,
                        user_id=user_id,
                        count=len(recent),
                    )
                    raise RateExceededError(
                        limit.scope, limit.max_orders, int(limit.window.total_seconds())
                    )

            self.store.record(ip_key, now)
            self.store.record(user_key, now)
