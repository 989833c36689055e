"""Event loop runner for the supervisor entry point."""

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _cancel_pending(loop: asyncio.AbstractEventLoop) -> int:
    """Cancel tasks still scheduled on the loop and let them unwind.

    Returns:
        Number of tasks that had to be cancelled.

    """
    pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    return len(pending)


def run_async_with_timeout(coro: Coroutine[Any, Any, T], executor_timeout: float = 10.0) -> T:
    """Run a coroutine on a fresh event loop and tear it down with bounds.

    Behaves like asyncio.run(), except that leftover tasks (stream readers
    of children that outlived the coroutine) are cancelled instead of
    reported, and the default executor gets at most ``executor_timeout``
    seconds to shut down.

    Args:
        coro: Coroutine to execute.
        executor_timeout: Timeout in seconds for executor shutdown.

    Returns:
        Result of the coroutine.

    Raises:
        Same exceptions as the coroutine.

    """
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        cancelled = _cancel_pending(loop)
        if cancelled:
            logger.debug("Cancelled %d leftover task(s) on loop shutdown", cancelled)

        with contextlib.suppress(Exception):
            loop.run_until_complete(loop.shutdown_asyncgens())

        try:
            loop.run_until_complete(
                asyncio.wait_for(loop.shutdown_default_executor(), timeout=executor_timeout)
            )
        except TimeoutError:
            logger.warning(
                "Executor shutdown timed out after %.1fs - some threads may still be running",
                executor_timeout,
            )
        except Exception as e:
            logger.debug("Executor shutdown error (ignored): %s", e)

        asyncio.set_event_loop(None)
        loop.close()
