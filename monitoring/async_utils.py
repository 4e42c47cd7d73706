import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def run_periodic(
    name: str,
    interval_s: float,
    job: Callable[[], Awaitable[object]],
    stop_event: asyncio.Event,
    run_immediately: bool = True,
) -> None:
    """Run ``job`` every ``interval_s`` seconds until ``stop_event`` is set.

    A failing run is logged and the timer keeps going.
    """
    if not run_immediately:
        if await _wait_or_stop(stop_event, interval_s):
            return
    while not stop_event.is_set():
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic job %s failed", name)
        if await _wait_or_stop(stop_event, interval_s):
            return


async def _wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True
