"""
Per-provider rate limiting shared by every worker.

Each provider gets its own ProviderLimiter: a continuously refilled token
bucket plus a ProviderBudget that counts usage per budget window. All state
of one limiter is guarded by that limiter's Condition; the RateLimiterSet
lock only protects lazy creation of limiters, so a busy provider never
slows down callers of another one.
"""

import logging
import threading
import time
from dataclasses import dataclass

from coursegen.core.constants import (
    RateUnit, DEFAULT_RATE_CAPACITY, DEFAULT_RATE_REFILL_PER_SEC,
    DEFAULT_BUDGET_WINDOW_SEC,
)
from coursegen.core.error_codes import QuotaExceededError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permit:
    provider: str
    cost: float
    granted_at: float


@dataclass
class RateSettings:
    capacity: float = DEFAULT_RATE_CAPACITY
    refill_per_sec: float = DEFAULT_RATE_REFILL_PER_SEC
    unit: str = RateUnit.CALLS
    budget_window_sec: float = DEFAULT_BUDGET_WINDOW_SEC
    max_cost_per_window: float | None = None
    cost_per_unit: float = 0.0

    @classmethod
    def from_dict(cls, data: dict | None) -> "RateSettings":
        data = data or {}
        settings = cls(
            capacity=float(data.get('capacity', DEFAULT_RATE_CAPACITY)),
            refill_per_sec=float(data.get('refill_per_sec', DEFAULT_RATE_REFILL_PER_SEC)),
            unit=data.get('unit', RateUnit.CALLS),
            budget_window_sec=float(data.get('budget_window_sec', DEFAULT_BUDGET_WINDOW_SEC)),
            max_cost_per_window=data.get('max_cost_per_window'),
            cost_per_unit=float(data.get('cost_per_unit', 0.0)),
        )
        if settings.capacity <= 0:
            raise ValueError("rate capacity must be positive")
        if settings.refill_per_sec < 0:
            raise ValueError("refill_per_sec cannot be negative")
        if settings.unit not in (RateUnit.CALLS, RateUnit.CHARS):
            raise ValueError(f"unknown rate unit {settings.unit!r}")
        return settings

    def cost_of(self, text: str | None = None) -> float:
        """Bucket cost of one call carrying ``text``."""
        if self.unit == RateUnit.CHARS:
            return float(max(1, len(text or "")))
        return 1.0


class ProviderBudget:
    """Usage counters for the current budget window. Caller holds the limiter lock."""

    def __init__(self, window_sec: float, max_cost: float | None, cost_per_unit: float,
                 clock=time.monotonic):
        self.window_sec = window_sec
        self.max_cost = max_cost
        self.cost_per_unit = cost_per_unit
        self._clock = clock
        self.window_started = clock()
        self.calls_used = 0
        self.units_used = 0.0
        self.cost_accrued = 0.0

    def _roll(self, now: float):
        if now - self.window_started >= self.window_sec:
            self.window_started = now
            self.calls_used = 0
            self.units_used = 0.0
            self.cost_accrued = 0.0

    def check(self, units: float, now: float, provider: str):
        self._roll(now)
        if self.max_cost is None:
            return
        if self.cost_accrued + units * self.cost_per_unit > self.max_cost:
            reset_after = max(0.0, self.window_sec - (now - self.window_started))
            raise QuotaExceededError(
                f"{provider} budget of {self.max_cost} exhausted for this window",
                provider=provider, reset_after=reset_after,
            )

    def record(self, units: float):
        self.calls_used += 1
        self.units_used += units
        self.cost_accrued += units * self.cost_per_unit

    def as_dict(self) -> dict:
        return {
            'calls_used': self.calls_used,
            'units_used': self.units_used,
            'cost_accrued': round(self.cost_accrued, 6),
        }


class ProviderLimiter:
    """Token bucket for one provider."""

    def __init__(self, provider: str, settings: RateSettings, clock=time.monotonic):
        self.provider = provider
        self.settings = settings
        self._clock = clock
        self._cond = threading.Condition(threading.Lock())
        self._tokens = settings.capacity
        self._last_refill = clock()
        self.budget = ProviderBudget(settings.budget_window_sec,
                                     settings.max_cost_per_window,
                                     settings.cost_per_unit, clock)
        self.granted = 0
        self.denied = 0

    def _refill(self, now: float):
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.settings.capacity,
                               self._tokens + elapsed * self.settings.refill_per_sec)
            self._last_refill = now

    def acquire(self, cost: float = 1.0, timeout: float = 0.0) -> Permit | None:
        """
        Take ``cost`` tokens, waiting at most ``timeout`` seconds.
        Returns None when no permit became available in time.
        Raises ValidationError for a cost the bucket can never hold, and
        QuotaExceededError when the budget window is exhausted.
        """
        if cost > self.settings.capacity:
            raise ValidationError(
                f"Request cost {cost:g} exceeds {self.provider} capacity {self.settings.capacity:g}"
            )

        deadline = self._clock() + max(0.0, timeout)
        with self._cond:
            while True:
                now = self._clock()
                self._refill(now)
                self.budget.check(cost, now, self.provider)
                if self._tokens >= cost:
                    self._tokens -= cost
                    self.budget.record(cost)
                    self.granted += 1
                    return Permit(self.provider, cost, now)

                remaining = deadline - now
                if remaining <= 0:
                    self.denied += 1
                    logger.warning("No %s permit within %.1fs (cost %g)",
                                   self.provider, timeout, cost)
                    return None

                if self.settings.refill_per_sec > 0:
                    needed = (cost - self._tokens) / self.settings.refill_per_sec
                else:
                    needed = remaining
                # Recheck after every wake-up; tokens only grow with time.
                self._cond.wait(min(needed, remaining))

    def stats(self) -> dict:
        with self._cond:
            self._refill(self._clock())
            return {
                'tokens': round(self._tokens, 3),
                'capacity': self.settings.capacity,
                'unit': self.settings.unit,
                'granted': self.granted,
                'denied': self.denied,
                **self.budget.as_dict(),
            }


class RateLimiterSet:
    """One limiter per provider, created on first use."""

    def __init__(self, provider_settings: dict | None = None, clock=time.monotonic):
        self._settings = {name: RateSettings.from_dict((entry or {}).get('rate'))
                          for name, entry in (provider_settings or {}).items()}
        self._clock = clock
        self._limiters: dict[str, ProviderLimiter] = {}
        self._lock = threading.Lock()

    def limiter(self, provider: str) -> ProviderLimiter:
        with self._lock:
            limiter = self._limiters.get(provider)
            if limiter is None:
                settings = self._settings.get(provider) or RateSettings()
                limiter = ProviderLimiter(provider, settings, self._clock)
                self._limiters[provider] = limiter
            return limiter

    def configure(self, provider: str, settings: RateSettings):
        """Replace a provider's settings. Only takes effect before first use."""
        with self._lock:
            self._settings[provider] = settings
            self._limiters.pop(provider, None)

    def acquire(self, provider: str, cost: float = 1.0, timeout: float = 0.0) -> Permit | None:
        return self.limiter(provider).acquire(cost, timeout)

    def stats(self) -> dict:
        with self._lock:
            limiters = dict(self._limiters)
        return {name: limiter.stats() for name, limiter in limiters.items()}
