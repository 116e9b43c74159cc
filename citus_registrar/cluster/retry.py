"""Polling helper shared by the coordinator wait and both readiness phases."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollPolicy:
    """How often to poll and for how long.

    Attributes:
        interval: Seconds to sleep between failed attempts.
        max_attempts: Attempt ceiling; ``None`` polls until the check passes.
    """

    interval: float = 5.0
    max_attempts: Optional[int] = 30

    def __post_init__(self) -> None:
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0, got {self.interval}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @property
    def ceiling_seconds(self) -> Optional[float]:
        """Upper bound on time spent sleeping, or ``None`` when unbounded."""
        if self.max_attempts is None:
            return None
        return self.interval * self.max_attempts


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    policy: PollPolicy,
    *,
    label: str = "",
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """Call ``check`` until it returns True or the policy is exhausted.

    Returns:
        True if a check passed, False once ``max_attempts`` checks have failed.
    """
    attempt = 0
    while True:
        attempt += 1
        if await check():
            if attempt > 1:
                await logger.adebug("poll_succeeded", label=label, attempt=attempt)
            return True

        if policy.max_attempts is not None and attempt >= policy.max_attempts:
            await logger.awarning(
                "poll_exhausted",
                label=label,
                attempts=attempt,
                interval=policy.interval,
            )
            return False

        await logger.ainfo(
            "poll_waiting",
            label=label,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            retry_in=policy.interval,
        )
        await sleep(policy.interval)
