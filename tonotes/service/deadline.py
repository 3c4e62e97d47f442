"""Deadline-bounded execution of blocking store calls."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from tonotes.logging import get_logger
from tonotes.service.errors import UnavailableError
from tonotes.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a synchronous store method in a worker thread under ``timeout``.

    Raises:
        UnavailableError: the deadline passed or the store reported itself unreachable
    """
    operation = getattr(func, "__name__", "store_call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise UnavailableError() from exc
    except StoreUnavailable as exc:
        logger.error("store_call_unavailable", operation=operation, error=exc.message)
        raise UnavailableError() from exc
