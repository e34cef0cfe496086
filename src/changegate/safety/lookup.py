"""Bounded external lookups.

Registry and route-table lookups are the only non-local calls made
during validation. Each one gets a fixed number of attempts, a per
attempt timeout and a short backoff; exhaustion raises
RegistryLookupTimeout so the caller can degrade to an "unverified"
finding instead of blocking the pipeline.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
import structlog

from changegate.core.exceptions import RegistryLookupTimeout

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class LookupPolicy:
    """Retry and timeout limits for one external lookup.

    Attributes:
        attempts: Total attempts, including the first.
        timeout_seconds: Per-attempt timeout.
        backoff_seconds: Delay before the second attempt, doubled after.
    """

    attempts: int = 2
    timeout_seconds: float = 2.0
    backoff_seconds: float = 0.2


async def bounded_lookup(
    target: str,
    call: Callable[[], Awaitable[T]],
    policy: LookupPolicy | None = None,
) -> T:
    """Run a lookup with bounded timeout and retry-with-backoff.

    Args:
        target: Description of what is being looked up, for logs and errors.
        call: Zero-argument coroutine factory performing the lookup.
        policy: Limits to apply. Uses defaults if not provided.

    Returns:
        The lookup result.

    Raises:
        RegistryLookupTimeout: If every attempt timed out or hit a transport error.
    """
    policy = policy or LookupPolicy()
    delay = policy.backoff_seconds

    for attempt in range(1, policy.attempts + 1):
        try:
            return await asyncio.wait_for(call(), timeout=policy.timeout_seconds)
        except (TimeoutError, asyncio.TimeoutError, httpx.TransportError) as e:
            logger.warning(
                "lookup_attempt_failed",
                target=target,
                attempt=attempt,
                attempts=policy.attempts,
                error=type(e).__name__,
            )
            if attempt < policy.attempts:
                await asyncio.sleep(delay)
                delay *= 2

    raise RegistryLookupTimeout(target, policy.attempts)
