"""Lifecycle event sinks.

Events are fire-and-forget notifications for observability:
{pipeline,job}.{created,started,completed,failed,skipped} from the async
runner, node.* and execution.* from the synchronous runner. Delivery failures
are logged and never reach the caller.

Usage:
    sink = create_event_sink("logging")
    await safe_emit(sink, "job.started", execution_id, {"job_id": job.id})
"""

import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol

from flowrunner.core.logging import get_logger

logger = get_logger(__name__)


class EventSinkProtocol(Protocol):
    """Protocol for event sinks (enables duck typing)."""

    async def emit(self, event_type: str, execution_id: str,
                   payload: Dict[str, Any]) -> None:
        ...


class NullEventSink:
    """Drops every event (Null Object pattern)."""

    async def emit(self, event_type: str, execution_id: str,
                   payload: Dict[str, Any]) -> None:
        return None


class LoggingEventSink:
    """Writes events to the structured log."""

    def __init__(self, level: str = "info"):
        self._log = getattr(logger, level.lower(), logger.info)

    async def emit(self, event_type: str, execution_id: str,
                   payload: Dict[str, Any]) -> None:
        self._log("Workflow event", event_type=event_type,
                  execution_id=execution_id, **payload)


class MemoryEventSink:
    """Keeps the most recent events in memory for inspection."""

    def __init__(self, maxlen: int = 1000):
        self._events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)

    async def emit(self, event_type: str, execution_id: str,
                   payload: Dict[str, Any]) -> None:
        self._events.append({
            "type": event_type,
            "execution_id": execution_id,
            "timestamp": time.time(),
            **payload,
        })

    def events(self, event_type: Optional[str] = None,
               execution_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            e for e in self._events
            if (event_type is None or e["type"] == event_type)
            and (execution_id is None or e["execution_id"] == execution_id)
        ]

    def types(self) -> List[str]:
        return [e["type"] for e in self._events]

    def clear(self) -> None:
        self._events.clear()


async def safe_emit(sink: EventSinkProtocol, event_type: str, execution_id: str,
                    payload: Optional[Dict[str, Any]] = None) -> None:
    """Deliver an event, logging (never raising) on sink failure."""
    try:
        await sink.emit(event_type, execution_id, payload or {})
    except Exception as e:
        logger.warning("Event delivery failed", event_type=event_type,
                       execution_id=execution_id, error=str(e))


def create_event_sink(kind: str = "logging") -> EventSinkProtocol:
    """Factory function to create an event sink by name (null, logging, memory)."""
    if kind == "memory":
        return MemoryEventSink()
    if kind == "logging":
        return LoggingEventSink()
    return NullEventSink()
