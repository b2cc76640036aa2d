from __future__ import annotations

from datetime import timedelta

import pytest

from soil_telemetry.errors import BackendUnavailable, CorruptRecordError, InvalidKeyError
from soil_telemetry.models import OtaStatus
from soil_telemetry.repos.file_repo import FileRepo

from .utils import dt, make_record

T0 = dt(2024, 5, 1, 12, 0, 0)


def test_directories_are_created_lazily(tmp_path) -> None:
    base = tmp_path / "data"
    repo = FileRepo(base)
    assert not base.exists()
    assert repo.list_devices() == []
    assert repo.query_timeseries("s1", T0, T0) == []

    repo.insert_timeseries(make_record())
    assert (base / "timeseries" / "s1").is_dir()


def test_inserted_record_round_trips_exactly_once(repo) -> None:
    record = make_record(
        timestamp=dt(2024, 5, 1, 12, 0, 0, 123456),
        battery=3.71,
        rssi=-68,
        meshHopCount=2,
        firmwareVersion="1.0.3",
    )
    repo.insert_timeseries(record)

    results = repo.query_timeseries("s1", T0 - timedelta(minutes=5), T0 + timedelta(minutes=5))

    assert [r.model_dump() for r in results] == [record.model_dump()]


def test_query_with_sub_millisecond_bounds_finds_the_record(repo) -> None:
    raw = dt(2024, 5, 1, 12, 0, 0, 123456)
    repo.insert_timeseries(make_record(timestamp=raw))

    results = repo.query_timeseries("s1", raw, raw)

    assert [r.timestamp for r in results] == [dt(2024, 5, 1, 12, 0, 0, 123000)]


def test_query_includes_boundaries_and_excludes_outside(repo) -> None:
    for minutes in (-2, -1, 0, 1, 2):
        repo.insert_timeseries(make_record(timestamp=T0 + timedelta(minutes=minutes)))

    results = repo.query_timeseries("s1", T0 - timedelta(minutes=1), T0 + timedelta(minutes=1))

    assert [r.timestamp for r in results] == [
        T0 - timedelta(minutes=1),
        T0,
        T0 + timedelta(minutes=1),
    ]


def test_query_sorts_ascending_regardless_of_insert_order(repo) -> None:
    for minutes in (3, 1, 2):
        repo.insert_timeseries(make_record(timestamp=T0 + timedelta(minutes=minutes)))

    results = repo.query_timeseries("s1", T0, T0 + timedelta(hours=1))

    assert [r.timestamp for r in results] == sorted(r.timestamp for r in results)
    assert len(results) == 3


def test_query_unknown_device_or_inverted_range_is_empty(repo) -> None:
    repo.insert_timeseries(make_record())
    assert repo.query_timeseries("nope", T0 - timedelta(days=1), T0 + timedelta(days=1)) == []
    assert repo.query_timeseries("s1", T0 + timedelta(days=1), T0 - timedelta(days=1)) == []


def test_query_keeps_devices_apart(repo) -> None:
    repo.insert_timeseries(make_record("s1"))
    repo.insert_timeseries(make_record("s2"))
    results = repo.query_timeseries("s2", T0, T0)
    assert [r.deviceId for r in results] == ["s2"]


def test_redelivery_is_additive(repo, tmp_path) -> None:
    record = make_record()
    repo.insert_timeseries(record)
    repo.insert_timeseries(record)

    results = repo.query_timeseries("s1", T0, T0)
    assert [r.model_dump() for r in results] == [record.model_dump()] * 2
    names = sorted(p.name for p in (tmp_path / "data" / "timeseries" / "s1").iterdir())
    assert names == ["20240501T120000000000-1.json", "20240501T120000000000.json"]


def test_latest_is_last_writer(repo) -> None:
    repo.upsert_latest(make_record(timestamp=T0, moisture=10))
    repo.upsert_latest(make_record(timestamp=T0 + timedelta(minutes=1), moisture=20))
    assert repo.get_latest("s1").sensors[0].value == 20

    # baseline contract: no ordering enforcement
    repo.upsert_latest(make_record(timestamp=T0, moisture=10))
    assert repo.get_latest("s1").sensors[0].value == 10


def test_monotonic_latest_ignores_older_writes(tmp_path) -> None:
    repo = FileRepo(tmp_path, monotonic_latest=True)
    repo.upsert_latest(make_record(timestamp=T0 + timedelta(minutes=1), moisture=20))
    repo.upsert_latest(make_record(timestamp=T0, moisture=10))
    assert repo.get_latest("s1").sensors[0].value == 20

    repo.upsert_latest(make_record(timestamp=T0 + timedelta(minutes=2), moisture=30))
    assert repo.get_latest("s1").sensors[0].value == 30


def test_get_latest_unknown_device(repo) -> None:
    assert repo.get_latest("never-reported") is None


def test_list_devices_sorted_and_excludes_ota(repo) -> None:
    for device_id in ("s3", "s1", "s2"):
        repo.upsert_latest(make_record(device_id))
    repo.set_ota_status("s1", OtaStatus(version="1.2.0", state="pending"))

    devices = repo.list_devices()

    assert [d.deviceId for d in devices] == ["s1", "s2", "s3"]


def test_ota_status_round_trip(repo) -> None:
    assert repo.get_ota_status("s1") is None

    status = OtaStatus(version="1.2.0", state="downloading", message="42%", timestamp=T0)
    repo.set_ota_status("s1", status)

    assert repo.get_ota_status("s1").model_dump() == status.model_dump()
    assert repo.get_latest("s1") is None


def test_corrupt_file_is_skipped_and_counted(repo, tmp_path) -> None:
    repo.insert_timeseries(make_record())
    bad = tmp_path / "data" / "timeseries" / "s1" / "20240501T120000500000.json"
    bad.write_text("{not json", encoding="utf-8")

    results = repo.query_timeseries("s1", T0, T0 + timedelta(seconds=1))

    assert len(results) == 1
    assert repo.skipped_rows == 1


def test_undecodable_bytes_are_skipped(repo, tmp_path) -> None:
    repo.insert_timeseries(make_record())
    repo.upsert_latest(make_record("s2"))
    (tmp_path / "data" / "timeseries" / "s1" / "20240501T120000000001.json").write_bytes(b"\xff\xfe garbage")
    (tmp_path / "data" / "latest" / "s2.json").write_bytes(b"\xff\xfe garbage")

    assert len(repo.query_timeseries("s1", T0, T0 + timedelta(seconds=1))) == 1
    assert repo.get_latest("s2") is None
    assert repo.list_devices() == []
    assert repo.skipped_rows == 3


def test_corrupt_latest_is_skipped(repo, tmp_path) -> None:
    repo.upsert_latest(make_record("s1"))
    repo.upsert_latest(make_record("s2"))
    (tmp_path / "data" / "latest" / "s2.json").write_text('{"sensors": 5}', encoding="utf-8")

    assert [d.deviceId for d in repo.list_devices()] == ["s1"]
    assert repo.get_latest("s2") is None
    assert repo.skipped_rows == 2


def test_strict_reads_raise(tmp_path) -> None:
    repo = FileRepo(tmp_path, strict_reads=True)
    repo.insert_timeseries(make_record())
    (tmp_path / "timeseries" / "s1" / "20240501T120000000001.json").write_text("[]", encoding="utf-8")

    with pytest.raises(CorruptRecordError):
        repo.query_timeseries("s1", T0, T0 + timedelta(seconds=1))


@pytest.mark.parametrize("device_id", ["../etc", "a/b", "a\\b", "..", "ota-s1"])
def test_unusable_device_ids(repo, device_id) -> None:
    with pytest.raises(InvalidKeyError):
        repo.insert_timeseries(make_record(device_id))
    with pytest.raises(InvalidKeyError):
        repo.upsert_latest(make_record(device_id))
    with pytest.raises(InvalidKeyError):
        repo.set_ota_status(device_id, OtaStatus(version="1", state="pending"))
    assert repo.get_latest(device_id) is None
    assert repo.get_ota_status(device_id) is None
    assert repo.query_timeseries(device_id, T0, T0) == []


def test_disk_failure_is_backend_unavailable(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    repo = FileRepo(blocker)

    with pytest.raises(BackendUnavailable) as info:
        repo.insert_timeseries(make_record())
    assert info.value.operation == "insert_timeseries"
    assert info.value.device_id == "s1"
