"""
Event Hub trigger for the ingestion pipeline.

IoT Hub routes device-to-cloud messages to its Event Hub-compatible endpoint.
Each received batch is decoded and handed to the pipeline as a list of raw
bodies; the partition is checkpointed afterwards so a restart does not replay
the batch. Delivery is therefore at-most-once from the pipeline's side.
"""
from __future__ import annotations

import asyncio
from typing import List, Optional

import structlog
from azure.eventhub import TransportType
from azure.eventhub.aio import EventHubConsumerClient

from .pipeline import IngestionPipeline

logger = structlog.get_logger(__name__)


def decode_bodies(events) -> List[str]:
    bodies = []
    for event in events:
        try:
            bodies.append(event.body_as_str(encoding="utf-8"))
        except (TypeError, ValueError) as ex:
            logger.warning("event_undecodable", sequence_number=getattr(event, "sequence_number", None), error=str(ex))
    return bodies


class TelemetryConsumer:
    def __init__(
        self,
        eh_conn_str: str,
        consumer_group: str,
        pipeline: IngestionPipeline,
        client: Optional[EventHubConsumerClient] = None,
    ) -> None:
        self._pipeline = pipeline
        self._client = client if client is not None else EventHubConsumerClient.from_connection_string(
            conn_str=eh_conn_str,
            consumer_group=consumer_group,
            transport_type=TransportType.AmqpOverWebsocket,  # port 443 gets through firewalls
        )
        self._task: Optional[asyncio.Task] = None

    async def _handle_events(self, partition_context, events) -> None:
        if not events:
            return
        await self._pipeline.process_batch(decode_bodies(events))
        try:
            await partition_context.update_checkpoint()
        except Exception as ex:
            logger.warning(
                "checkpoint_failed",
                partition=getattr(partition_context, "partition_id", None),
                error=str(ex),
            )

    async def _run(self) -> None:
        async with self._client:
            await self._client.receive_batch(
                on_event_batch=self._handle_events,
                max_wait_time=5.0,
            )

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info("consumer_started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("consumer_stopped")
