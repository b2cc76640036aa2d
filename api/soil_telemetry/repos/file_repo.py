"""Directory-tree storage used for local development, tests and offline runs.

Layout under the root::

    timeseries/<deviceId>/<YYYYmmddTHHMMSSffffff>[-N].json
    latest/<deviceId>.json
    latest/ota-<deviceId>.json

Directories are created lazily on first write. Every write lands in a
temporary file first and is then published atomically, so readers never see
a half-written document.
"""

from __future__ import annotations

import contextlib
import itertools
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Type, TypeVar, Union

import structlog
from pydantic import BaseModel

from ..errors import BackendUnavailable
from ..models import OtaStatus, TelemetryRecord, ensure_utc, to_millis
from .base import OTA_KEY_PREFIX, StorageRepo

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_STAMP_FORMAT = "%Y%m%dT%H%M%S%f"
_STAMP_LENGTH = 21


def _stamp(ts: datetime) -> str:
    return ensure_utc(ts).strftime(_STAMP_FORMAT)


def _is_file_name(device_id: str) -> bool:
    if device_id in (".", ".."):
        return False
    return not any(sep in device_id for sep in ("/", "\\", "\x00"))


class FileRepo(StorageRepo):
    def __init__(
        self,
        base_path: Union[str, os.PathLike, None] = None,
        *,
        strict_reads: bool = False,
        monotonic_latest: bool = False,
    ) -> None:
        super().__init__(strict_reads=strict_reads, monotonic_latest=monotonic_latest)
        self.base_path = Path(base_path) if base_path is not None else Path("data")
        self._timeseries_root = self.base_path / "timeseries"
        self._latest_root = self.base_path / "latest"
        self._latest_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"FileRepo({str(self.base_path)!r})"

    # --- helpers

    def _is_key(self, device_id: str) -> bool:
        return super()._is_key(device_id) and _is_file_name(device_id)

    @contextlib.contextmanager
    def _io(self, operation: str, device_id: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except OSError as ex:
            raise BackendUnavailable(
                f"{operation} failed: {ex}", operation=operation, device_id=device_id
            ) from ex

    def _latest_path(self, device_id: str) -> Path:
        return self._latest_root / f"{device_id}.json"

    def _ota_path(self, device_id: str) -> Path:
        return self._latest_root / f"{OTA_KEY_PREFIX}{device_id}.json"

    @staticmethod
    def _write_temp(directory: Path, text: str) -> str:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
        except BaseException:
            os.unlink(tmp)
            raise
        return tmp

    def _replace(self, path: Path, text: str) -> None:
        tmp = self._write_temp(path.parent, text)
        try:
            os.replace(tmp, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise

    def _publish_new(self, directory: Path, stem: str, text: str) -> Path:
        tmp = self._write_temp(directory, text)
        try:
            for n in itertools.count():
                candidate = directory / (f"{stem}.json" if n == 0 else f"{stem}-{n}.json")
                try:
                    os.link(tmp, candidate)
                except FileExistsError:
                    continue
                return candidate
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)

    def _read(self, path: Path, model: Type[M], operation: str) -> Optional[M]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as ex:
            raise BackendUnavailable(f"{operation} failed: {ex}", operation=operation) from ex
        try:
            # UnicodeDecodeError is a ValueError too
            return model.model_validate(json.loads(raw.decode("utf-8")))
        except ValueError as ex:
            self._skip_row(operation, path.name, ex)
            return None

    # --- time series

    def insert_timeseries(self, record: TelemetryRecord) -> None:
        self._check_key(record.deviceId, "insert_timeseries")
        if record.timestamp is None:
            raise ValueError("cannot store a record without a timestamp")
        directory = self._timeseries_root / record.deviceId
        with self._io("insert_timeseries", record.deviceId):
            path = self._publish_new(directory, _stamp(record.timestamp), record.model_dump_json())
        logger.debug("timeseries_written", device_id=record.deviceId, path=str(path))

    def query_timeseries(
        self, device_id: str, from_: datetime, to: datetime
    ) -> List[TelemetryRecord]:
        # bounds are compared at the stored (millisecond) precision
        from_, to = to_millis(from_), to_millis(to)
        if not self._is_key(device_id) or from_ > to:
            return []
        lo, hi = _stamp(from_), _stamp(to)
        directory = self._timeseries_root / device_id
        with self._io("query_timeseries", device_id):
            paths = sorted(directory.glob("*.json")) if directory.is_dir() else []

        results: List[TelemetryRecord] = []
        for path in paths:
            key = path.stem[:_STAMP_LENGTH]
            if key < lo or key > hi:
                continue
            record = self._read(path, TelemetryRecord, "query_timeseries")
            if record is None:
                continue
            if record.timestamp is None:
                self._skip_row("query_timeseries", path.name, ValueError("missing timestamp"))
                continue
            if from_ <= record.timestamp <= to:
                results.append(record)
        results.sort(key=lambda r: r.timestamp)
        return results

    # --- latest state

    def upsert_latest(self, record: TelemetryRecord) -> None:
        self._check_key(record.deviceId, "upsert_latest")
        if record.timestamp is None:
            raise ValueError("cannot store a record without a timestamp")
        path = self._latest_path(record.deviceId)
        with self._io("upsert_latest", record.deviceId):
            if not self.monotonic_latest:
                self._replace(path, record.model_dump_json())
                return
            with self._latest_lock:
                current = self._read(path, TelemetryRecord, "upsert_latest")
                if current is not None and current.timestamp is not None and current.timestamp >= record.timestamp:
                    logger.debug(
                        "stale_latest_ignored",
                        device_id=record.deviceId,
                        stored=current.timestamp.isoformat(),
                        incoming=record.timestamp.isoformat(),
                    )
                    return
                self._replace(path, record.model_dump_json())

    def get_latest(self, device_id: str) -> Optional[TelemetryRecord]:
        if not self._is_key(device_id):
            return None
        return self._read(self._latest_path(device_id), TelemetryRecord, "get_latest")

    def list_devices(self) -> List[TelemetryRecord]:
        with self._io("list_devices"):
            paths = sorted(self._latest_root.glob("*.json")) if self._latest_root.is_dir() else []
        results = []
        for path in paths:
            if path.name.startswith(OTA_KEY_PREFIX):
                continue
            record = self._read(path, TelemetryRecord, "list_devices")
            if record is not None:
                results.append(record)
        results.sort(key=lambda r: r.deviceId)
        return results

    # --- OTA

    def set_ota_status(self, device_id: str, status: OtaStatus) -> None:
        self._check_key(device_id, "set_ota_status")
        with self._io("set_ota_status", device_id):
            self._replace(self._ota_path(device_id), status.model_dump_json())

    def get_ota_status(self, device_id: str) -> Optional[OtaStatus]:
        if not self._is_key(device_id):
            return None
        return self._read(self._ota_path(device_id), OtaStatus, "get_ota_status")
