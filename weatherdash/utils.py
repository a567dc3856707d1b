import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay_seconds: float = 1.0,
) -> T:
    """
    Await ``fn()`` up to ``attempts`` times, sleeping a fixed ``delay_seconds``
    between attempts. The last error is re-raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if attempt == attempts:
                raise
            logger.warning("Attempt %s/%s failed: %s", attempt, attempts, exc)
            await asyncio.sleep(delay_seconds)
    raise AssertionError("unreachable")


def paginate(page: int, limit: int, total: int) -> dict:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total_records": total,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
    }
