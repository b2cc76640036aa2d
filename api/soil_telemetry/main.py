import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .config import Settings
from .commands import send_command
from .consumer import TelemetryConsumer
from .errors import (
    BackendUnavailable,
    InvalidKeyError,
    StorageError,
    TelemetryValidationError,
)
from .logging_config import configure_logging
from .models import OtaRequest, OtaStatus, OtaStatusReport, TelemetryRecord, utcnow
from .notifications import FanoutSink, NotificationSink, close_sink, device_scope
from .ota import OtaTracker
from .pipeline import IngestionPipeline
from .redis_repo import RedisPublisher
from .repos.base import StorageRepo
from .repos.file_repo import FileRepo
from .repos.mongo_repo import MongoRepo
from .ws_manager import WSManager

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW = timedelta(hours=1)


def build_storage(settings: Settings) -> StorageRepo:
    """Connection string present -> durable store, otherwise local files."""
    if settings.mongo_uri:
        return MongoRepo(
            settings.mongo_uri,
            settings.mongo_db,
            settings.mongo_timeseries_collection,
            settings.mongo_latest_collection,
            sharded=settings.mongo_sharded,
            strict_reads=settings.strict_reads,
            monotonic_latest=settings.monotonic_latest,
        )
    return FileRepo(
        settings.data_dir,
        strict_reads=settings.strict_reads,
        monotonic_latest=settings.monotonic_latest,
    )


def build_sink(settings: Settings, ws_manager: WSManager) -> NotificationSink:
    sinks: List[NotificationSink] = [ws_manager]
    if settings.redis_url:
        sinks.append(RedisPublisher(settings.redis_url, settings.redis_channel_prefix))
    return sinks[0] if len(sinks) == 1 else FanoutSink(sinks)


def create_app(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[StorageRepo] = None,
    sink: Optional[NotificationSink] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    ws_manager = WSManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        # a store that cannot be built aborts startup
        app.state.storage = storage if storage is not None else build_storage(settings)
        app.state.sink = sink if sink is not None else build_sink(settings, ws_manager)
        app.state.pipeline = IngestionPipeline(
            app.state.storage,
            app.state.sink,
            max_concurrency=settings.ingest_max_concurrency,
        )
        app.state.ota = OtaTracker(
            app.state.storage,
            app.state.sink,
            strict_transitions=settings.ota_strict_transitions,
        )
        logger.info("startup", storage=repr(app.state.storage))

        consumer = None
        if settings.eh_conn_str:
            consumer = TelemetryConsumer(settings.eh_conn_str, settings.eh_consumer_group, app.state.pipeline)
            consumer.start()
        try:
            yield
        finally:
            if consumer:
                await consumer.stop()
            if storage is None:
                app.state.storage.close()
            if sink is None:
                close_sink(app.state.sink)

    app = FastAPI(title="Soil Telemetry Ingestion & Live Dashboard", lifespan=lifespan)
    app.state.settings = settings
    app.state.ws_manager = ws_manager

    # --- error mapping
    @app.exception_handler(TelemetryValidationError)
    async def _validation_error(request: Request, ex: TelemetryValidationError):
        return JSONResponse(status_code=400, content={"detail": str(ex)})

    @app.exception_handler(InvalidKeyError)
    async def _invalid_key(request: Request, ex: InvalidKeyError):
        return JSONResponse(status_code=400, content={"detail": str(ex)})

    @app.exception_handler(BackendUnavailable)
    async def _backend_unavailable(request: Request, ex: BackendUnavailable):
        logger.error("backend_unavailable", path=request.url.path, error=str(ex))
        return JSONResponse(status_code=503, content={"detail": "storage backend unavailable"})

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, ex: StorageError):
        logger.error("storage_error", path=request.url.path, error=str(ex))
        return JSONResponse(status_code=500, content={"detail": "storage error"})

    # --- REST APIs
    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/devices", response_model=List[TelemetryRecord])
    def list_devices(storage: StorageRepo = Depends(_storage)):
        return storage.list_devices()

    @app.get("/api/devices/{device_id}/latest", response_model=TelemetryRecord)
    def get_latest(device_id: str, storage: StorageRepo = Depends(_storage)):
        latest = storage.get_latest(device_id)
        if latest is None:
            raise HTTPException(status_code=404, detail="device not found")
        return latest

    @app.get("/api/devices/{device_id}/timeseries", response_model=List[TelemetryRecord])
    def get_timeseries(
        device_id: str,
        from_: Optional[datetime] = Query(None, alias="from"),
        to: Optional[datetime] = Query(None),
        storage: StorageRepo = Depends(_storage),
    ):
        to = to or utcnow()
        from_ = from_ or to - DEFAULT_WINDOW
        return storage.query_timeseries(device_id, from_, to)

    @app.post("/api/devices/{device_id}/command")
    async def send_device_command(device_id: str, request: Request):
        try:
            command = await request.json()
        except ValueError:
            raise TelemetryValidationError("command must be JSON")
        try:
            await send_command(request.app.state.sink, device_id, command)
        except TelemetryValidationError:
            raise
        except Exception as ex:
            logger.warning("command_failed", device_id=device_id, error=str(ex))
            return JSONResponse(status_code=503, content={"detail": "command delivery failed"})
        return {"status": "ok"}

    @app.post("/api/devices/{device_id}/ota")
    async def request_ota(device_id: str, ota: OtaRequest, tracker: OtaTracker = Depends(_ota)):
        status = await tracker.request_update(device_id, ota)
        return {"status": "ok", "otaUrl": ota.url, "ota": status.model_dump(mode="json")}

    @app.get("/api/devices/{device_id}/ota/status", response_model=OtaStatus)
    async def get_ota_status(device_id: str, tracker: OtaTracker = Depends(_ota)):
        status = await tracker.get_status(device_id)
        if status is None:
            raise HTTPException(status_code=404, detail="no OTA status reported")
        return status

    @app.post("/api/devices/{device_id}/ota/status", response_model=OtaStatus)
    async def report_ota_status(
        device_id: str, report: OtaStatusReport, tracker: OtaTracker = Depends(_ota)
    ):
        return await tracker.report_status(device_id, report)

    # local-dev trigger; production messages arrive through the Event Hub consumer
    @app.post("/telemetry", status_code=202)
    async def ingest(request: Request):
        body = (await request.body()).decode("utf-8", errors="replace")
        result = await request.app.state.pipeline.process_batch([body])
        summary = {
            "stored": result.stored_count,
            "rejected": result.rejected,
            "failed": result.failed,
        }
        if result.rejected:
            return JSONResponse(status_code=400, content=summary)
        if result.failed:
            return JSONResponse(status_code=503, content=summary)
        return summary

    # --- WebSockets for live UI
    @app.websocket("/ws/telemetry")
    async def ws_telemetry(ws: WebSocket):
        await ws_manager.connect(ws)
        try:
            while True:
                await _handle_client_message(ws_manager, ws, await ws.receive_text())
        except WebSocketDisconnect:
            ws_manager.disconnect(ws)

    return app


def _storage(request: Request) -> StorageRepo:
    return request.app.state.storage


def _ota(request: Request) -> OtaTracker:
    return request.app.state.ota


async def _handle_client_message(ws_manager: WSManager, ws: WebSocket, text: str) -> None:
    """Clients send ``{"action": "join"|"leave", "deviceId": "..."}``."""
    try:
        message = json.loads(text)
    except ValueError:
        message = None
    if not isinstance(message, dict):
        await ws.send_json({"type": "error", "data": "expected a JSON object"})
        return
    action, device_id = message.get("action"), message.get("deviceId")
    if not isinstance(device_id, str) or not device_id.strip():
        await ws.send_json({"type": "error", "data": "deviceId required"})
        return
    if action == "join":
        ws_manager.join(ws, device_scope(device_id))
        await ws.send_json({"type": "joined", "data": {"deviceId": device_id}})
    elif action == "leave":
        ws_manager.leave(ws, device_scope(device_id))
        await ws.send_json({"type": "left", "data": {"deviceId": device_id}})
    else:
        await ws.send_json({"type": "error", "data": f"unknown action {action!r}"})


app = create_app()
