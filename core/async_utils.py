"""
Registrar - Async Utilities

Cancellation helpers for the command pipeline.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def run_to_completion(aw: Awaitable[T]) -> T:
    """
    Run an awaitable to completion even if the caller is cancelled.

    Unlike a bare asyncio.shield, the caller keeps waiting until the
    inner task has finished, so nothing that follows (releasing locks,
    releasing reservations) can overlap with it. A cancellation that
    arrived meanwhile is re-raised once the task is done; its result is
    then only observable through its side effects.

    Usage:
        committed = await run_to_completion(apply_and_commit())
    """
    task = asyncio.ensure_future(aw)
    cancelled = False

    while not task.done():
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.done():
                break
            cancelled = True
        except Exception:
            break

    if cancelled:
        # Retrieve the outcome so a failure is not reported as unretrieved
        if not task.cancelled():
            task.exception()
        raise asyncio.CancelledError()
    return task.result()
