"""Storage port shared by the file and MongoDB backends.

Operations are synchronous and may block on disk or network I/O. Async callers
dispatch them with ``asyncio.to_thread`` and never hold a lock across a call.

Not-found is never an error: point reads return ``None`` and range reads an
empty list. Failures of the backend itself raise ``StorageError`` subclasses.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

import structlog

from ..errors import CorruptRecordError, InvalidKeyError
from ..models import OtaStatus, TelemetryRecord

logger = structlog.get_logger(__name__)

# OTA status entries share a namespace with device-latest entries
OTA_KEY_PREFIX = "ota-"


def is_usable_key(device_id: str) -> bool:
    return bool(device_id) and not device_id.startswith(OTA_KEY_PREFIX)


class StorageRepo(ABC):
    """Contract every storage backend implements."""

    def __init__(self, *, strict_reads: bool = False, monotonic_latest: bool = False) -> None:
        self.strict_reads = strict_reads
        self.monotonic_latest = monotonic_latest
        self._skipped_rows = 0
        self._skip_lock = threading.Lock()

    def _is_key(self, device_id: str) -> bool:
        return is_usable_key(device_id)

    def _check_key(self, device_id: str, operation: str) -> None:
        if not self._is_key(device_id):
            raise InvalidKeyError(
                f"device id {device_id!r} cannot be used as a storage key",
                operation=operation,
                device_id=device_id,
            )

    @property
    def skipped_rows(self) -> int:
        """Rows dropped on read because they could not be mapped."""
        return self._skipped_rows

    def _skip_row(self, operation: str, ref: Any, error: Exception) -> None:
        if self.strict_reads:
            raise CorruptRecordError(
                f"unreadable row {ref!r}: {error}", operation=operation
            ) from error
        with self._skip_lock:
            self._skipped_rows += 1
        logger.warning(
            "row_skipped",
            backend=type(self).__name__,
            operation=operation,
            ref=str(ref),
            error=str(error),
        )

    @abstractmethod
    def insert_timeseries(self, record: TelemetryRecord) -> None:
        """Append an immutable record. Never overwrites an existing one."""

    @abstractmethod
    def upsert_latest(self, record: TelemetryRecord) -> None:
        """Replace the latest state of ``record.deviceId`` (last writer wins)."""

    @abstractmethod
    def query_timeseries(
        self, device_id: str, from_: datetime, to: datetime
    ) -> List[TelemetryRecord]:
        """Records with ``from_ <= timestamp <= to``, ascending by timestamp."""

    @abstractmethod
    def get_latest(self, device_id: str) -> Optional[TelemetryRecord]:
        ...

    @abstractmethod
    def list_devices(self) -> List[TelemetryRecord]:
        """One latest record per known device, ascending by ``deviceId``."""

    @abstractmethod
    def set_ota_status(self, device_id: str, status: OtaStatus) -> None:
        ...

    @abstractmethod
    def get_ota_status(self, device_id: str) -> Optional[OtaStatus]:
        ...

    def close(self) -> None:
        """Release backend resources. No-op by default."""
