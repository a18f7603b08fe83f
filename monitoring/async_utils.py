import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from api.metrics import metrics
from strategy.errors import ComputationTimeout


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


async def with_timeout(awaitable: Awaitable, timeout: Optional[float], fallback: Any = None,
                       label: str = 'call', context: str = '') -> Any:
    """Await ``awaitable`` bounded by ``timeout``; return ``fallback`` on expiry or error."""
    where = f" [{context}]" if context else ''
    try:
        if timeout is None or timeout <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        error = ComputationTimeout(f"{label}{where} timed out after {timeout:.1f}s")
        logger.warning("%s, using fallback", error)
        metrics.collaborator_fallbacks.labels(call=label).inc()
        return fallback
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("%s%s failed, using fallback", label, where)
        metrics.collaborator_fallbacks.labels(call=label).inc()
        return fallback
