from __future__ import annotations

from unittest.mock import patch

from soil_telemetry import main
from soil_telemetry.config import Settings
from soil_telemetry.notifications import FanoutSink
from soil_telemetry.repos.file_repo import FileRepo
from soil_telemetry.ws_manager import WSManager


def test_defaults_from_empty_env() -> None:
    settings = Settings.from_env({})

    assert settings.mongo_uri is None
    assert settings.mongo_db == "watering_db"
    assert settings.data_dir == "./data"
    assert settings.eh_consumer_group == "$Default"
    assert settings.ingest_max_concurrency == 8
    assert not settings.monotonic_latest


def test_values_and_flags_from_env() -> None:
    settings = Settings.from_env(
        {
            "MONGO_URI": " mongodb://db:27017 ",
            "MONGO_SHARDED": "true",
            "REDIS_URL": "redis://cache:6379/0",
            "INGEST_MAX_CONCURRENCY": "2",
            "MONOTONIC_LATEST": "1",
            "STRICT_READS": "no",
            "OTA_STRICT_TRANSITIONS": "Yes",
            "LOG_LEVEL": "debug",
        }
    )

    assert settings.mongo_uri == "mongodb://db:27017"
    assert settings.mongo_sharded
    assert settings.redis_url == "redis://cache:6379/0"
    assert settings.ingest_max_concurrency == 2
    assert settings.monotonic_latest
    assert not settings.strict_reads
    assert settings.ota_strict_transitions
    assert settings.log_level == "DEBUG"


def test_blank_connection_string_selects_file_store(tmp_path) -> None:
    settings = Settings.from_env({"MONGO_URI": "  ", "DATA_DIR": str(tmp_path)})
    storage = main.build_storage(settings)

    assert isinstance(storage, FileRepo)
    assert storage.base_path == tmp_path


def test_connection_string_selects_durable_store() -> None:
    settings = Settings(mongo_uri="mongodb://db:27017", mongo_db="field", monotonic_latest=True)
    with patch.object(main, "MongoRepo") as mongo_repo:
        storage = main.build_storage(settings)

    assert storage is mongo_repo.return_value
    args, kwargs = mongo_repo.call_args
    assert args[:2] == ("mongodb://db:27017", "field")
    assert kwargs["monotonic_latest"] is True


def test_sink_is_websocket_only_without_redis() -> None:
    ws_manager = WSManager()
    assert main.build_sink(Settings(), ws_manager) is ws_manager


def test_redis_adds_fanout() -> None:
    ws_manager = WSManager()
    sink = main.build_sink(Settings(redis_url="redis://cache:6379/0"), ws_manager)

    assert isinstance(sink, FanoutSink)
    assert sink.sinks[0] is ws_manager
    assert type(sink.sinks[1]).__name__ == "RedisPublisher"
