"""Fan-out contract used after successful writes.

Delivery is best-effort: callers log failures and never roll back storage.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


def device_scope(device_id: str) -> str:
    return f"device:{device_id}"


def close_sink(sink) -> None:
    """Release whatever client a sink holds; sinks without one are left alone."""
    close = getattr(sink, "close", None)
    if callable(close):
        close()


@runtime_checkable
class NotificationSink(Protocol):
    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        ...


class NullSink:
    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        return None


class FanoutSink:
    """Publishes to every sink; one failing sink does not starve the others."""

    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self.sinks: List[NotificationSink] = list(sinks)

    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        errors = []
        for sink in self.sinks:
            try:
                await sink.publish(scope_key, event_name, payload)
            except Exception as ex:
                logger.warning(
                    "sink_publish_failed",
                    sink=type(sink).__name__,
                    scope=scope_key,
                    event_name=event_name,
                    error=str(ex),
                )
                errors.append(ex)
        if errors:
            raise errors[0]

    def close(self) -> None:
        for sink in self.sinks:
            close_sink(sink)
