"""
Race primitive and per-scenario timeout supervision.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable

from .report import Outcome, describe

logger = logging.getLogger(__name__)


class MissingScenarioBody(Exception):
    """A scenario has neither a body nor a skip entry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"no scenario body for {name}")


class ScenarioTimeout(Exception):
    """A scenario ran past its configured deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"timeout after {round(timeout * 1000)}ms")


def _abandon(task: asyncio.Future) -> None:
    # Retrieve the loser's exception so asyncio does not log it as unhandled.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("abandoned task failed: %s", task.exception())


async def race(first: Awaitable, second: Awaitable) -> tuple[int, Any]:
    """
    Run two awaitables concurrently.  The first to finish wins and the other
    is cancelled and never observed again.

    Returns ``(index, result)`` where index is 0 for ``first`` and 1 for
    ``second``.  If the winner raised, the exception propagates.  When both
    finish in the same loop iteration ``first`` wins.
    """
    tasks = [asyncio.ensure_future(first), asyncio.ensure_future(second)]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    winner = 0 if tasks[0] in done else 1
    loser = tasks[1 - winner]
    if loser.done():
        _abandon(loser)
    else:
        loser.add_done_callback(_abandon)
    return winner, tasks[winner].result()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def supervise(spec, context) -> Outcome:
    """
    Run ``spec.body(context)`` against ``spec.timeout``.  Any exception the
    body raises, and the deadline firing first, become a failed Outcome.
    """
    started = time.monotonic()
    try:
        if spec.body is None:
            raise MissingScenarioBody(spec.name)
        winner, diagnostics = await race(spec.body(context), asyncio.sleep(spec.timeout))
        if winner == 1:
            raise ScenarioTimeout(spec.timeout)
    except Exception as exc:
        logger.debug("scenario %s failed", spec.name, exc_info=True)
        return Outcome.failed(describe(exc), _elapsed_ms(started))
    return Outcome.passed(diagnostics, _elapsed_ms(started))
