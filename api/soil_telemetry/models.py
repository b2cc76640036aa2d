from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return to_millis(datetime.now(timezone.utc))


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_millis(value: datetime) -> datetime:
    """UTC at millisecond precision, the resolution of BSON dates."""
    value = ensure_utc(value)
    return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


def is_zero_time(value: datetime) -> bool:
    # 0001-01-01T00:00:00 is what devices send for an unset clock
    return value.replace(tzinfo=None) == datetime.min


def _fold_keys(data: Any, fields: Dict[str, str]) -> Any:
    # wire keys are matched case-insensitively; unknown keys are dropped
    if not isinstance(data, dict):
        return data
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(key, str):
            continue
        name = fields.get(key.lower())
        if name is not None and name not in out:
            out[name] = value
    return out


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _case_insensitive_keys(cls, data: Any) -> Any:
        return _fold_keys(data, {name.lower(): name for name in cls.model_fields})


class SensorReading(_WireModel):
    name: str
    type: Optional[str] = None
    value: float
    unit: Optional[str] = None


class TelemetryRecord(_WireModel):
    deviceId: str
    timestamp: Optional[datetime] = None
    sensors: List[SensorReading] = Field(default_factory=list)
    battery: Optional[float] = None
    rssi: Optional[int] = None
    meshHopCount: Optional[int] = None
    firmwareVersion: Optional[str] = None

    @field_validator("deviceId")
    @classmethod
    def _device_id_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("deviceId must not be empty")
        return value

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None or is_zero_time(value):
            return None
        return to_millis(value)

    def with_timestamp(self, timestamp: datetime) -> "TelemetryRecord":
        return self.model_copy(update={"timestamp": to_millis(timestamp)})


class DeviceLatestState(BaseModel):
    deviceId: str
    lastSeen: datetime
    latest: TelemetryRecord

    @classmethod
    def from_record(cls, record: TelemetryRecord) -> "DeviceLatestState":
        if record.timestamp is None:
            raise ValueError("latest state requires a timestamped record")
        return cls(deviceId=record.deviceId, lastSeen=record.timestamp, latest=record)


class OtaStatus(_WireModel):
    version: str = ""
    state: str = ""  # pending, downloading, success, failed
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return to_millis(value)


class OtaStatusReport(_WireModel):
    """What a device posts; the server assigns the timestamp."""

    version: str = ""
    state: str = ""
    message: Optional[str] = None


class OtaRequest(_WireModel):
    version: str = ""
    url: Optional[str] = None
    checksum: Optional[str] = None
    notes: Optional[str] = None
