"""Deadline wrapper for outbound calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from sparkgate.utils.errors import UpstreamTimeout

T = TypeVar("T")


async def call_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float,
    label: str,
) -> T:
    """Await *operation* for at most *timeout* seconds.

    On expiry the inner call is cancelled and :class:`UpstreamTimeout` is
    raised, which a surrounding breaker counts as a failure.
    """
    try:
        return await asyncio.wait_for(operation(), timeout)
    except asyncio.TimeoutError:
        raise UpstreamTimeout(label, timeout) from None
