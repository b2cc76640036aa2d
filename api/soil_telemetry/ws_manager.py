from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Set

import structlog
from fastapi import WebSocket

logger = structlog.get_logger(__name__)


class WSManager:
    """Live WebSocket clients, grouped by scope key (``device:<id>``)."""

    def __init__(self) -> None:
        self._groups: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()

    def disconnect(self, ws: WebSocket) -> None:
        for group in list(self._groups):
            self.leave(ws, group)

    def join(self, ws: WebSocket, group: str) -> None:
        self._groups[group].add(ws)

    def leave(self, ws: WebSocket, group: str) -> None:
        members = self._groups.get(group)
        if members is None:
            return
        members.discard(ws)
        if not members:
            del self._groups[group]

    def members(self, group: str) -> Set[WebSocket]:
        return set(self._groups.get(group, ()))

    async def _send(self, targets, message: Dict[str, Any]) -> None:
        # best-effort; a socket that fails once is dropped
        for ws in list(targets):
            try:
                await ws.send_json(message)
            except Exception as ex:
                logger.info("websocket_dropped", error=str(ex))
                self.disconnect(ws)

    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        await self._send(self.members(scope_key), {"type": event_name, "data": payload})
