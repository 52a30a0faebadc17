from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.scopes import ADMIN_WILDCARD, SERVICE_WILDCARD, Scope
from tokenwarden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

TIER_ADMIN = "admin"
TIER_SERVICE = "service"
TIER_EXTENDED = "extended"
TIER_STANDARD = "standard"

DEFAULT_TIER_LIMITS: Dict[str, int] = {
    TIER_ADMIN: 10000,
    TIER_SERVICE: 5000,
    TIER_EXTENDED: 1000,
    TIER_STANDARD: 100,
}


class CounterStore(Protocol):
    async def increment_within_limit(
        self, key: str, limit: int, ttl_seconds: int
    ) -> Tuple[bool, int]: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    tier: str
    requests: int
    window_seconds: int

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "requests": self.requests,
            "window_seconds": self.window_seconds,
        }


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    policy: RateLimitPolicy
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed, clock-aligned window counters keyed by token hash and scope tier.

    A burst straddling a window boundary can reach twice the nominal rate;
    that is the accepted cost of fixed windows.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        window_seconds: int = 3600,
        limits: Optional[Dict[str, int]] = None,
        extended_threshold: int = 3,
        fail_open: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.counters = counters
        self.window_seconds = window_seconds
        self.limits = {**DEFAULT_TIER_LIMITS, **(limits or {})}
        self.extended_threshold = extended_threshold
        self.fail_open = fail_open
        self._clock = clock

    @classmethod
    def from_settings(cls, counters: CounterStore, settings: Settings) -> "RateLimiter":
        return cls(
            counters,
            window_seconds=settings.rate_limit_window_seconds,
            limits={
                TIER_ADMIN: settings.rate_limit_admin,
                TIER_SERVICE: settings.rate_limit_service,
                TIER_EXTENDED: settings.rate_limit_extended,
                TIER_STANDARD: settings.rate_limit_standard,
            },
            extended_threshold=settings.rate_limit_extended_threshold,
            fail_open=settings.rate_limit_fail_open,
        )

    def tier_for(self, scopes: Sequence[Scope]) -> str:
        # Most privileged match wins
        if ADMIN_WILDCARD in scopes:
            return TIER_ADMIN
        if SERVICE_WILDCARD in scopes:
            return TIER_SERVICE
        if len(scopes) > self.extended_threshold:
            return TIER_EXTENDED
        return TIER_STANDARD

    def policy_for(self, scopes: Sequence[Scope]) -> RateLimitPolicy:
        tier = self.tier_for(scopes)
        return RateLimitPolicy(tier, self.limits[tier], self.window_seconds)

    def window_start(self, now: float) -> int:
        return int(now // self.window_seconds) * self.window_seconds

    async def check_and_increment(
        self, token_hash: str, scopes: Sequence[Scope]
    ) -> RateLimitDecision:
        policy = self.policy_for(scopes)
        now = self._clock()
        start = self.window_start(now)
        reset_seconds = max(1, math.ceil(start + self.window_seconds - now))
        key = f"ratelimit:{token_hash}:{policy.tier}:{start}"
        try:
            allowed, count = await self.counters.increment_within_limit(
                key, policy.requests, reset_seconds
            )
        except StoreUnavailable as exc:
            if not self.fail_open:
                raise
            logger.warning(
                "rate_limit_fail_open",
                tier=policy.tier,
                token_hash=token_hash,
                error=str(exc),
            )
            return RateLimitDecision(True, policy, policy.requests, reset_seconds)

        remaining = max(0, policy.requests - count) if allowed else 0
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                tier=policy.tier,
                limit=policy.requests,
                token_hash=token_hash,
            )
        return RateLimitDecision(allowed, policy, remaining, reset_seconds)
