import asyncio
import logging
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)


async def retry[T](
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `operation()` up to `attempts` times, doubling the pause each time.

    The last failure is raised as is.
    """
    for attempt in range(1, attempts):
        try:
            return await operation()
        except retry_on as exc:
            delay = backoff * 2 ** (attempt - 1)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)
    return await operation()
