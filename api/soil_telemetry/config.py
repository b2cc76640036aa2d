from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .repos.mongo_repo import DEFAULT_DB, DEFAULT_LATEST, DEFAULT_TIMESERIES

_TRUE = {"1", "true", "yes", "on"}


def _flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE


def _optional(env: Mapping[str, str], name: str) -> Optional[str]:
    value = (env.get(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    mongo_uri: Optional[str] = None  # set -> durable store, unset -> file store
    mongo_db: str = DEFAULT_DB
    mongo_timeseries_collection: str = DEFAULT_TIMESERIES
    mongo_latest_collection: str = DEFAULT_LATEST
    mongo_sharded: bool = False
    data_dir: str = "./data"
    redis_url: Optional[str] = None
    redis_channel_prefix: str = "telemetry:"
    eh_conn_str: Optional[str] = None
    eh_consumer_group: str = "$Default"
    ingest_max_concurrency: int = 8
    monotonic_latest: bool = False
    strict_reads: bool = False
    ota_strict_transitions: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ
        return cls(
            mongo_uri=_optional(env, "MONGO_URI"),
            mongo_db=env.get("MONGO_DB", DEFAULT_DB),
            mongo_timeseries_collection=env.get("MONGO_TIMESERIES_COLLECTION", DEFAULT_TIMESERIES),
            mongo_latest_collection=env.get("MONGO_LATEST_COLLECTION", DEFAULT_LATEST),
            mongo_sharded=_flag(env, "MONGO_SHARDED"),
            data_dir=env.get("DATA_DIR", "./data"),
            redis_url=_optional(env, "REDIS_URL"),
            redis_channel_prefix=env.get("REDIS_CHANNEL_PREFIX", "telemetry:"),
            eh_conn_str=_optional(env, "EH_COMPAT_CONN_STR"),
            eh_consumer_group=env.get("EH_CONSUMER_GROUP", "$Default"),  # prefer a dedicated group
            ingest_max_concurrency=int(env.get("INGEST_MAX_CONCURRENCY", "8")),
            monotonic_latest=_flag(env, "MONOTONIC_LATEST"),
            strict_reads=_flag(env, "STRICT_READS"),
            ota_strict_transitions=_flag(env, "OTA_STRICT_TRANSITIONS"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
