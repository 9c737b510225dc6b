import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[Optional[asyncio.Task]],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait on long-running pipeline tasks, then cancel the rest and run ``cleanup``.

    The first task to fail stops the wait; its exception is logged and the
    remaining tasks are cancelled before ``cleanup`` runs. Cancellation of the
    caller is treated as a normal shutdown.
    """
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        logger.error("Pipeline task failed: %s", exc)
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            results = await asyncio.gather(*task_list, return_exceptions=True)
            for task, result in zip(task_list, results):
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.debug("Task %s ended with %r", task.get_name(), result)
        if cleanup is not None:
            await cleanup()
