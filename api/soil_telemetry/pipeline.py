"""Ingestion: raw device messages -> storage -> live fan-out.

Every message in a batch is handled on its own. A bad or failing message is
logged and dropped; it never fails the rest of the batch. There are no
retries: a storage failure is terminal for that message, and the time series
may end up ahead of the latest-state projection if the second write fails.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from .errors import StorageError
from .models import TelemetryRecord, utcnow
from .notifications import NotificationSink, NullSink, device_scope
from .repos.base import StorageRepo

logger = structlog.get_logger(__name__)

TELEMETRY_EVENT = "telemetryReceived"


@dataclass
class BatchResult:
    received: int = 0
    stored: List[TelemetryRecord] = field(default_factory=list)
    rejected: int = 0
    failed: int = 0
    notify_failed: int = 0

    @property
    def stored_count(self) -> int:
        return len(self.stored)


def parse_message(body: str) -> TelemetryRecord:
    """Parse one raw body. Raises ``ValueError`` (incl. pydantic's) on bad input."""
    return TelemetryRecord.model_validate(json.loads(body))


class IngestionPipeline:
    def __init__(
        self,
        storage: StorageRepo,
        sink: Optional[NotificationSink] = None,
        *,
        max_concurrency: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.storage = storage
        self.sink = sink if sink is not None else NullSink()
        self.max_concurrency = max_concurrency
        self._clock = clock

    async def process_batch(self, messages: Iterable[Optional[str]]) -> BatchResult:
        batch = list(messages)
        result = BatchResult(received=len(batch))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(index: int, body: Optional[str]) -> None:
            async with semaphore:
                await self._process_one(index, body, result)

        await asyncio.gather(*(run(i, body) for i, body in enumerate(batch)))
        logger.info(
            "batch_processed",
            received=result.received,
            stored=result.stored_count,
            rejected=result.rejected,
            failed=result.failed,
            notify_failed=result.notify_failed,
        )
        return result

    def normalize(self, body: Optional[str]) -> TelemetryRecord:
        if body is None or not body.strip():
            raise ValueError("empty message")
        record = parse_message(body)
        if record.timestamp is None:
            record = record.with_timestamp(self._clock())
        return record

    async def _process_one(self, index: int, body: Optional[str], result: BatchResult) -> None:
        try:
            record = self.normalize(body)
        except ValidationError as ex:
            logger.warning(
                "message_rejected", index=index, reason="invalid_telemetry", error=str(ex), body=body
            )
            result.rejected += 1
            return
        except ValueError as ex:
            logger.warning("message_rejected", index=index, reason=str(ex), body=body)
            result.rejected += 1
            return
        except Exception:
            # e.g. RecursionError from a pathologically nested body
            logger.exception("message_rejected", index=index, reason="undecodable")
            result.rejected += 1
            return

        if not await self._store(index, record):
            result.failed += 1
            return
        result.stored.append(record)
        logger.info(
            "telemetry_stored", device_id=record.deviceId, timestamp=record.timestamp.isoformat()
        )

        try:
            await self.sink.publish(
                device_scope(record.deviceId), TELEMETRY_EVENT, record.model_dump(mode="json")
            )
        except Exception as ex:
            result.notify_failed += 1
            logger.warning("notify_failed", device_id=record.deviceId, error=str(ex))

    async def _store(self, index: int, record: TelemetryRecord) -> bool:
        # both writes are attempted even if the first one fails
        ok = True
        for operation in ("insert_timeseries", "upsert_latest"):
            try:
                await asyncio.to_thread(getattr(self.storage, operation), record)
            except StorageError as ex:
                ok = False
                logger.error(
                    "storage_write_failed",
                    index=index,
                    operation=operation,
                    device_id=record.deviceId,
                    error=str(ex),
                )
            except Exception:
                ok = False
                logger.exception(
                    "storage_write_crashed",
                    index=index,
                    operation=operation,
                    device_id=record.deviceId,
                )
        return ok
