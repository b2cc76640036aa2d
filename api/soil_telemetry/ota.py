"""OTA rollout status on top of the storage port.

Reports overwrite the stored status unconditionally and are stamped with
server time. ``strict_transitions`` opts into checking the reported order.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional

import structlog

from .errors import OtaTransitionError, TelemetryValidationError
from .models import OtaRequest, OtaStatus, OtaStatusReport, utcnow
from .notifications import NotificationSink, NullSink, device_scope
from .repos.base import StorageRepo

logger = structlog.get_logger(__name__)

OTA_STATUS_EVENT = "otaStatus"
OTA_COMMAND_EVENT = "ota"

PENDING = "pending"
DOWNLOADING = "downloading"
SUCCESS = "success"
FAILED = "failed"

# same-version moves; a new version may start anywhere
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PENDING, DOWNLOADING, FAILED}),
    DOWNLOADING: frozenset({DOWNLOADING, SUCCESS, FAILED}),
    SUCCESS: frozenset({SUCCESS, PENDING}),
    FAILED: frozenset({FAILED, PENDING}),
}


def check_transition(previous: Optional[OtaStatus], state: str, version: str) -> None:
    if previous is None or previous.version != version:
        return
    allowed = ALLOWED_TRANSITIONS.get(previous.state.lower())
    if allowed is None:
        return
    if state.lower() not in allowed:
        raise OtaTransitionError(
            f"OTA state {previous.state!r} -> {state!r} not allowed for version {version!r}",
            previous=previous.state,
            requested=state,
        )


class OtaTracker:
    def __init__(
        self,
        storage: StorageRepo,
        sink: Optional[NotificationSink] = None,
        *,
        strict_transitions: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.sink = sink if sink is not None else NullSink()
        self.strict_transitions = strict_transitions
        self._clock = clock

    async def get_status(self, device_id: str) -> Optional[OtaStatus]:
        return await asyncio.to_thread(self.storage.get_ota_status, device_id)

    async def report_status(self, device_id: str, report: OtaStatusReport) -> OtaStatus:
        if not report.state or not report.state.strip():
            raise TelemetryValidationError("OTA status requires a state")
        if self.strict_transitions:
            previous = await self.get_status(device_id)
            check_transition(previous, report.state, report.version)

        status = OtaStatus(
            version=report.version,
            state=report.state,
            message=report.message,
            timestamp=self._clock(),
        )
        await asyncio.to_thread(self.storage.set_ota_status, device_id, status)
        logger.info("ota_status_recorded", device_id=device_id, version=status.version, state=status.state)
        await self._notify(device_id, OTA_STATUS_EVENT, status.model_dump(mode="json"))
        return status

    async def request_update(self, device_id: str, request: OtaRequest) -> OtaStatus:
        """Announce a firmware update to the device and mark it pending."""
        if not request.version.strip() or not (request.url or "").strip():
            raise TelemetryValidationError("OTA request requires 'version' and 'url'")
        command = {
            "type": "ota",
            "version": request.version,
            "url": request.url,
            "checksum": request.checksum,
        }
        await self._notify(device_id, OTA_COMMAND_EVENT, command)
        status = OtaStatus(
            version=request.version,
            state=PENDING,
            message=request.notes,
            timestamp=self._clock(),
        )
        await asyncio.to_thread(self.storage.set_ota_status, device_id, status)
        logger.info("ota_requested", device_id=device_id, version=request.version)
        return status

    async def _notify(self, device_id: str, event_name: str, payload) -> None:
        try:
            await self.sink.publish(device_scope(device_id), event_name, payload)
        except Exception as ex:
            logger.warning("notify_failed", device_id=device_id, event_name=event_name, error=str(ex))
