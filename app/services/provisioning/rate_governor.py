"""Rate-limit governor: paces platform calls per (user, account)."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

import structlog

from app.provisioning.models import RateLimitWindow
from app.services.platform.client import RateLimitSignal

logger = structlog.get_logger(__name__)


class RateLimitStore(Protocol):
    async def get(self, user_id: str, account_id: str) -> Optional[RateLimitWindow]:
        ...

    async def upsert(self, window: RateLimitWindow) -> RateLimitWindow:
        ...


@dataclass
class RateLimitDecision:
    """Result of a capacity check.

    Attributes:
        can_proceed: False only when the hard ceiling is reached and the
            window has not reset yet
        should_defer: True at or above the soft threshold; new attempts go
            to the deferred queue instead of being sent now
        usage_percentage: Usage as last reported (0 for a fresh window)
        reset_at: When the current window resets, if known
        reason: no_window, window_reset, ok, soft_threshold or hard_ceiling
    """

    can_proceed: bool
    should_defer: bool
    usage_percentage: float
    reset_at: Optional[datetime]
    reason: str


class RateLimitGovernor:
    """Reads the latest usage window before each call and records new signals.

    ``record_usage`` is the only writer of rate-limit windows. Writes are
    last-write-wins; they inform pacing only.
    """

    def __init__(
        self,
        store: RateLimitStore,
        soft_threshold_pct: float = 80.0,
        hard_ceiling_pct: float = 100.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._soft = soft_threshold_pct
        self._hard = hard_ceiling_pct
        self._now = clock or (lambda: datetime.now(timezone.utc))

    async def check(self, user_id: str, account_id: str) -> RateLimitDecision:
        window = await self._store.get(user_id, account_id)
        if window is None:
            return RateLimitDecision(True, False, 0.0, None, "no_window")

        now = self._now()
        if window.window_reset_at is not None and window.window_reset_at <= now:
            # Window elapsed; the stored usage no longer applies
            return RateLimitDecision(True, False, 0.0, None, "window_reset")

        usage = window.usage_percentage
        if usage >= self._hard:
            logger.info(
                "rate_limit_hard_ceiling",
                user_id=user_id,
                account_id=account_id,
                usage_percentage=usage,
            )
            return RateLimitDecision(False, True, usage, window.window_reset_at, "hard_ceiling")
        if usage >= self._soft:
            return RateLimitDecision(True, True, usage, window.window_reset_at, "soft_threshold")
        return RateLimitDecision(True, False, usage, window.window_reset_at, "ok")

    async def can_proceed(self, user_id: str, account_id: str) -> bool:
        decision = await self.check(user_id, account_id)
        return decision.can_proceed

    async def record_usage(
        self, user_id: str, account_id: str, signal: RateLimitSignal
    ) -> RateLimitWindow:
        window = RateLimitWindow(
            user_id=user_id,
            account_id=account_id,
            calls_used=signal.calls_used,
            calls_allowed=signal.calls_allowed,
            usage_percentage=signal.usage_percentage,
            window_reset_at=self._now() + timedelta(seconds=signal.reset_in_seconds),
            last_signal=signal.raw,
        )
        saved = await self._store.upsert(window)
        logger.debug(
            "rate_limit_usage_recorded",
            user_id=user_id,
            account_id=account_id,
            usage_percentage=round(signal.usage_percentage, 1),
        )
        return saved

    async def get_window(self, user_id: str, account_id: str) -> Optional[RateLimitWindow]:
        return await self._store.get(user_id, account_id)
