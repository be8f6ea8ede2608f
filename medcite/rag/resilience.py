"""
Resilient external calls

Every external call site (query understanding, relevance scoring, retrieval
strategies) goes through `resilient_call`: the awaitable either returns its
value or the documented fallback. Failures are logged with the stage name and
request identifiers and counted in the metrics. Cancellation always
propagates so an aborted request stops promptly.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from medcite.observability.metrics import record_fallback

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def resilient_call(
    stage: str,
    call: Callable[[], Awaitable[T]],
    default: T | Callable[[], T],
    timeout: float | None = None,
    context: dict[str, Any] | None = None,
) -> T:
    """
    Await `call()` and return its result, or the fallback on any failure.

    Args:
        stage: Pipeline stage name used in logs and metrics.
        call: Zero-argument factory returning the awaitable to run.
        default: Fallback value, or a zero-argument callable producing it.
        timeout: Optional per-call timeout in seconds.
        context: Identifiers (query, passage id, strategy) for the log line.

    Returns:
        The call's result, or the fallback.
    """
    try:
        if timeout is not None:
            return await asyncio.wait_for(call(), timeout=timeout)
        return await call()
    except asyncio.TimeoutError:
        logger.warning(
            "[%s] timed out after %.1fs %s, using fallback",
            stage,
            timeout,
            _describe(context),
        )
    except Exception as e:
        logger.warning(
            "[%s] failed %s, using fallback: %s", stage, _describe(context), e
        )

    record_fallback(stage)
    return default() if callable(default) else default


def _describe(context: dict[str, Any] | None) -> str:
    if not context:
        return ""
    return "(" + ", ".join(f"{k}={v!r}" for k, v in context.items()) + ")"
