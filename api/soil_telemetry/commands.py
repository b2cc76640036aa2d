"""Ad-hoc device commands, pushed to the device's live scope.

The cloud-to-device transport subscribes to the same scope, so a failed
publish means the command was not delivered.
"""

from __future__ import annotations

from typing import Any, Dict

import structlog

from .errors import TelemetryValidationError
from .notifications import NotificationSink, device_scope

logger = structlog.get_logger(__name__)

COMMAND_EVENT = "command"


async def send_command(sink: NotificationSink, device_id: str, command: Any) -> Dict[str, Any]:
    if not device_id.strip():
        raise TelemetryValidationError("deviceId must not be empty")
    if not isinstance(command, dict) or not command:
        raise TelemetryValidationError("command must be a non-empty JSON object")
    await sink.publish(device_scope(device_id), COMMAND_EVENT, command)
    logger.info("command_sent", device_id=device_id, command_type=command.get("type"))
    return command
