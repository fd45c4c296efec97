"""Trace the stages of a run.

Each `trace_context` pushes a name onto a stack held in a context variable,
so the stack follows asyncio tasks and log lines emitted by a stage can name
the cluster and stage they ran under.
"""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator

__all__ = [
    "current_trace",
    "trace_context",
]

_LOGGER = logging.getLogger(__name__)

TRACE_SEPARATOR = " > "

trace: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "trace", default=()
)


def current_trace() -> str:
    """Return the active stages joined outermost first, or an empty string."""
    return TRACE_SEPARATOR.join(trace.get())


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Run the block as a named stage, logging when it starts and ends."""
    token = trace.set((*trace.get(), name))
    label = current_trace()
    start = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, perf_counter() - start)
