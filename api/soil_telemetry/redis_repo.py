from __future__ import annotations

import asyncio
import json
from typing import Any

import redis


class RedisPublisher:
    """Pub/sub sink: one channel per scope key, e.g. ``telemetry:device:s1``."""

    def __init__(self, url: str, channel_prefix: str = "telemetry:", client=None) -> None:
        self.client = client if client is not None else redis.Redis.from_url(url)
        self.channel_prefix = channel_prefix

    def channel(self, scope_key: str) -> str:
        return f"{self.channel_prefix}{scope_key}"

    def publish_sync(self, scope_key: str, event_name: str, payload: Any) -> int:
        message = json.dumps({"event": event_name, "data": payload}, default=str)
        return self.client.publish(self.channel(scope_key), message)

    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        await asyncio.to_thread(self.publish_sync, scope_key, event_name, payload)

    def close(self) -> None:
        self.client.close()
