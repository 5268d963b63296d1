"""
Retry policy and executor for payment-rail calls.

The policy is pure data: how many attempts, and how long to wait before
each one. The executor runs an async operation under a policy with an
injected sleep, so tests drive it without real timers.

Only GatewayUnavailable is retried. InvalidBeneficiary and
InsufficientFunds are permanent and surface on the first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from subsidy_engine.errors import GatewayUnavailable, InvalidArgument

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base * multiplier**(attempt-1), capped."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidArgument("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise InvalidArgument("Retry delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delays(self) -> list[float]:
        """Every backoff delay a fully failing run would sleep through."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


class RetryExecutor:
    """
    Runs an operation until it succeeds, fails permanently, or the policy
    runs out of attempts.

    ``on_failure(attempt, error)`` is awaited after every failed attempt,
    transient or permanent, before any backoff sleep.
    """

    def __init__(self, policy: RetryPolicy, sleep: Sleep = asyncio.sleep) -> None:
        self.policy = policy
        self.sleep = sleep

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        on_failure: Callable[[int, Exception], Awaitable[None]] | None = None,
    ) -> tuple[T, int]:
        """
        Returns:
            Tuple of (result, attempts used).

        Raises:
            GatewayUnavailable: the last transient error, once attempts run out.
            Exception: any non-transient error, re-raised unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation(attempt), attempt
            except GatewayUnavailable as exc:
                if on_failure:
                    await on_failure(attempt, exc)
                if attempt >= self.policy.max_attempts:
                    logger.warning(
                        "Giving up after %d attempt(s): %s", attempt, exc.message
                    )
                    raise
                delay = self.policy.delay_for(attempt)
                logger.info(
                    "Attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt, self.policy.max_attempts, exc.message, delay,
                )
                await self.sleep(delay)
            except Exception as exc:
                if on_failure:
                    await on_failure(attempt, exc)
                raise
