from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import aclosing
from typing import Any, AsyncIterator, Protocol

from src.alerting.schemas.monitoring import WatchEvent

logger = logging.getLogger(__name__)


class WatchTerminatedError(Exception):
    """A watch stream ended; the index it feeds can no longer be trusted."""

    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"watch on {kind} terminated: {reason}")


class EventSource(Protocol):
    kind: str

    def events(self) -> AsyncIterator[WatchEvent]: ...


class EventSink(Protocol):
    def apply(self, event: WatchEvent) -> Any: ...


# PUBLIC_INTERFACE
async def watch_loop(source: EventSource, index: EventSink, shutdown_event: asyncio.Event) -> None:
    """
    Feed every event from `source` into `index` until shutdown.

    This task is the only writer of `index`. If the stream ends or fails while the
    service is still running, WatchTerminatedError is raised.
    """
    logger.info("Watch consumer for %s started", source.kind)
    try:
        async with aclosing(source.events()) as stream:
            async for event in stream:
                if shutdown_event.is_set():
                    break
                index.apply(event)
    except Exception as e:
        if shutdown_event.is_set():
            logger.info("Watch consumer for %s stopped (%s)", source.kind, e)
            return
        logger.critical("Watch on %s failed: %s", source.kind, e)
        raise WatchTerminatedError(source.kind, str(e)) from e

    if shutdown_event.is_set():
        logger.info("Watch consumer for %s stopped", source.kind)
        return
    logger.critical("Watch on %s ended unexpectedly", source.kind)
    raise WatchTerminatedError(source.kind, "event stream ended")


# PUBLIC_INTERFACE
def exit_on_watch_termination(task: "asyncio.Task[None]") -> None:
    """Task done-callback: signal the process to exit when a watch consumer dies."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        return
    logger.critical("Stopping process: %s", exc)
    os.kill(os.getpid(), signal.SIGTERM)
