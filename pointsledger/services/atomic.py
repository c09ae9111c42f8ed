"""Run a unit of work with optimistic retry."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from pointsledger.core.config import get_settings
from pointsledger.core.exceptions import ConflictError
from pointsledger.core.logging import get_logger
from pointsledger.store.base import LedgerStore, UnitOfWork, WriteConflict, get_store

log = get_logger(__name__)

T = TypeVar("T")


async def run_atomic(
    work: Callable[[UnitOfWork], Awaitable[T]],
    store: LedgerStore | None = None,
    operation: str = "unit_of_work",
) -> T:
    """
    Run `work` inside a fresh unit of work and commit it.
    On write conflict the whole unit is re-run against fresh reads; app errors propagate untouched.
    """
    store = store or get_store()
    attempts = max(1, get_settings().transaction_max_retries)
    for attempt in range(1, attempts + 1):
        try:
            async with store.unit_of_work() as uow:
                result = await work(uow)
            return result
        except WriteConflict as e:
            log.debug("write_conflict_retry", operation=operation, attempt=attempt, reason=str(e))
            await asyncio.sleep(min(0.05, 0.001 * 2 ** attempt))
    log.warning("write_conflict_exhausted", operation=operation, attempts=attempts)
    raise ConflictError("Concurrent update, please retry", details={"operation": operation})
