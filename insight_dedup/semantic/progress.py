"""
Progress Channel - Fire-and-forget progress events for long-running jobs.

The orchestrator publishes; a consumer (SSE response, CLI progress bar) reads.
Publishing never blocks and never fails the job: once the consumer goes
away, events are silently dropped.
"""
from __future__ import annotations

import queue
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from loguru import logger

STAGE_EMBEDDINGS = "embeddings"
STAGE_CLUSTERING = "clustering"


@dataclass
class ProgressEvent:
    """One progress snapshot."""

    stage: str
    job_id: str | None = None
    total: int = 0
    processed: int = 0
    errors: int = 0
    complete: bool = False
    skipped: bool = False
    done: bool = False
    error: bool = False
    message: str | None = None
    counters: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flat JSON payload; phase counters sit next to the common fields."""
        data = asdict(self)
        counters = data.pop("counters")
        data.update(counters)
        return {k: v for k, v in data.items() if v is not None}


class ProgressChannel(Protocol):
    def publish(self, event: ProgressEvent) -> None: ...

    def close(self) -> None: ...


class NullProgressChannel:
    """Channel that discards everything."""

    def publish(self, event: ProgressEvent) -> None:
        pass

    def close(self) -> None:
        pass


class QueueProgressChannel:
    """
    Thread-safe channel backed by ``queue.Queue``.

    ``close()`` marks the consumer as gone: later publishes are dropped and
    ``events()`` stops after draining what is already queued.
    """

    _SENTINEL = object()

    def __init__(self, maxsize: int = 0):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.debug(f"Progress queue full, dropping {event.stage} event")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(self._SENTINEL)
        except queue.Full:
            pass

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """
        Next event, or None once the channel is closed and drained.

        Raises:
            queue.Empty: Nothing arrived within ``timeout``.
        """
        item = self._queue.get(timeout=timeout)
        if item is self._SENTINEL:
            return None
        return item

    def events(self, timeout: float | None = None):
        """Iterate events until the channel is closed."""
        while True:
            event = self.get(timeout=timeout)
            if event is None:
                return
            yield event
