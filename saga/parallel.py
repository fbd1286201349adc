"""
Onboarding Saga — Parallel Stream Join

Fan-out/fan-in for the one genuinely concurrent stage. Branches run on a
thread pool; the join returns once every branch has finished, keyed by
branch name. When a branch raises (TerminatedError included), branches
that have not started are cancelled and branches already running are
waited for, then the first exception is re-raised. An abort from one
stream is never masked by the other, and no branch is still writing to
the journal after the join returns.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Callable

logger = logging.getLogger("saga.parallel")


def fan_out(
    branches: dict[str, Callable[[], Any]],
    max_workers: int | None = None,
) -> dict[str, Any]:
    """Run named branches concurrently and join their results."""
    if not branches:
        return {}

    pool = ThreadPoolExecutor(
        max_workers=max_workers or len(branches),
        thread_name_prefix="saga-stream",
    )
    try:
        futures = {pool.submit(fn): name for name, fn in branches.items()}
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)

        for future in done:
            exc = future.exception()
            if exc is not None:
                for p in pending:
                    p.cancel()
                logger.warning(
                    "Stream '%s' raised %s; aborting join", futures[future], type(exc).__name__,
                )
                raise exc

        # FIRST_EXCEPTION returns early only on failure; drain the rest.
        results: dict[str, Any] = {}
        for future, name in futures.items():
            results[name] = future.result()
        return results
    finally:
        # Running branches share the journal connection; let them finish.
        pool.shutdown(wait=True, cancel_futures=True)
