from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Tuple

from soil_telemetry.models import SensorReading, TelemetryRecord


def dt(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_record(device_id: str = "s1", timestamp: datetime = None, moisture: float = 42.5, **extra) -> TelemetryRecord:
    return TelemetryRecord(
        deviceId=device_id,
        timestamp=timestamp or dt(2024, 5, 1, 12, 0, 0),
        sensors=[SensorReading(name="moisture1", type="capacitive", value=moisture, unit="%")],
        **extra,
    )


class RecordingSink:
    def __init__(self) -> None:
        self.published: List[Tuple[str, str, Any]] = []

    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        self.published.append((scope_key, event_name, payload))


class FailingSink:
    def __init__(self) -> None:
        self.calls = 0

    async def publish(self, scope_key: str, event_name: str, payload: Any) -> None:
        self.calls += 1
        raise ConnectionError("push channel down")
