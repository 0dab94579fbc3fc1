import asyncio
from datetime import datetime, timedelta, timezone

from bulletproof.models import SnapshotInfo, generate_snapshot_id
from bulletproof.state_db import append_deleted, append_saved, load_snapshot_infos, log_length


BASE_TIME = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def _info(offset_minutes, message=""):
    when = BASE_TIME + timedelta(minutes=offset_minutes)
    return SnapshotInfo(id=generate_snapshot_id(when), timestamp=when, message=message, file_count=3)


def test_missing_log_lists_nothing(tmp_path):
    assert asyncio.run(load_snapshot_infos(tmp_path / "index.db")) == []


def test_replay_applies_saves_and_deletes(tmp_path):
    db_path = tmp_path / "meta" / "index.db"
    first, second, third = _info(0, "first"), _info(1), _info(2)

    async def scenario():
        for info in (first, second, third):
            await append_saved(db_path, info)
        await append_deleted(db_path, second.id)
        return await load_snapshot_infos(db_path)

    infos = asyncio.run(scenario())

    assert [info.id for info in infos] == [first.id, third.id]
    assert infos[0].message == "first"
    assert infos[0].file_count == 3
    assert infos[0].timestamp == first.timestamp


def test_cap_never_drops_live_snapshots(tmp_path):
    db_path = tmp_path / "index.db"
    infos = [_info(index) for index in range(5)]

    async def scenario():
        for info in infos:
            await append_saved(db_path, info, cap=3)
        return await log_length(db_path), await load_snapshot_infos(db_path)

    length, listed = asyncio.run(scenario())

    assert length == 5
    assert [info.id for info in listed] == [info.id for info in infos]


def test_cap_compacts_deleted_snapshots(tmp_path):
    db_path = tmp_path / "index.db"
    first, second, third = _info(0), _info(1), _info(2)

    async def scenario():
        for info in (first, second, third):
            await append_saved(db_path, info, cap=4)
        await append_deleted(db_path, first.id, cap=4)
        await append_deleted(db_path, second.id, cap=4)
        return await log_length(db_path), await load_snapshot_infos(db_path)

    length, listed = asyncio.run(scenario())

    assert length == 1
    assert [info.id for info in listed] == [third.id]


def test_resaved_snapshot_keeps_latest_metadata(tmp_path):
    db_path = tmp_path / "index.db"
    first, other = _info(0, "old"), _info(1)

    async def scenario():
        await append_saved(db_path, first, cap=2)
        await append_saved(db_path, other, cap=2)
        await append_saved(db_path, _info(0, "new"), cap=2)
        return await log_length(db_path), await load_snapshot_infos(db_path)

    length, listed = asyncio.run(scenario())

    assert length == 2
    assert {info.id: info.message for info in listed} == {first.id: "new", other.id: ""}
