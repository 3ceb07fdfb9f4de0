"""
Utilities for running async code in Celery tasks.

CRITICAL: Celery workers use prefork pool which requires special handling
for async code. Using asyncio.run() closes the event loop, breaking async
database connections.
"""

import asyncio


def run_async_task(coro):
    """
    Run an async coroutine in a Celery task without closing the event loop.

    Args:
        coro: The async coroutine to run

    Returns:
        The result of the coroutine

    Usage:
        @celery_app.task
        def my_task():
            async def _do_work():
                ...

            return run_async_task(_do_work())
    """
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        # No event loop exists, create one
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    # Leave the loop open; later tasks in this worker reuse it
    return loop.run_until_complete(coro)
