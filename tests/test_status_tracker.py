import asyncio

import pytest

from counsel_intake.db import Database
from counsel_intake.events import EventBus
from counsel_intake.status_tracker import StatusTracker


async def _tracker(tmp_path, ttl_s=3600):
    db = Database(str(tmp_path / "status.db"))
    await db.init()
    bus = EventBus(db)
    return StatusTracker(db, bus, ttl_s=ttl_s), db


def _write(tracker, progress, status="processing", message="working"):
    return tracker.set_status(
        "st-1", session_id="s1", organization_id="public", status=status, message=message, progress=progress
    )


@pytest.mark.asyncio
async def test_created_at_survives_every_update(tmp_path):
    tracker, _ = await _tracker(tmp_path)
    first = await _write(tracker, 10)
    await asyncio.sleep(0.01)
    later = await _write(tracker, 60)
    assert later.created_at == first.created_at
    assert later.updated_at >= first.updated_at
    assert await tracker.get_created_at("st-1") == first.created_at


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(tmp_path):
    tracker, _ = await _tracker(tmp_path)
    await _write(tracker, 60)
    record = await _write(tracker, 25)
    assert record.progress == 60


@pytest.mark.asyncio
async def test_failed_resets_progress_and_freezes_record(tmp_path):
    tracker, _ = await _tracker(tmp_path)
    await _write(tracker, 40)
    failed = await _write(tracker, 90, status="failed", message="Document not found for analysis")
    assert failed.progress == 0
    after = await _write(tracker, 100, status="completed")
    assert after.status == "failed"
    assert (await tracker.get_status("st-1")).message == "Document not found for analysis"


@pytest.mark.asyncio
async def test_concurrent_writes_for_one_id_stay_monotonic(tmp_path):
    tracker, _ = await _tracker(tmp_path)
    await asyncio.gather(*(_write(tracker, value) for value in (10, 25, 40, 60, 70, 80, 90)))
    assert (await tracker.get_status("st-1")).progress == 90


@pytest.mark.asyncio
async def test_expired_records_are_hidden(tmp_path):
    tracker, _ = await _tracker(tmp_path, ttl_s=-1)
    await _write(tracker, 10)
    assert await tracker.get_status("st-1") is None
    assert await tracker.list_session_statuses("s1") == []


@pytest.mark.asyncio
async def test_each_write_emits_status_update_event(tmp_path):
    tracker, db = await _tracker(tmp_path)
    record = await tracker.create_file_status("s1", "public", "lease.pdf", "abc_lease.pdf")
    assert record.status == "queued"
    assert record.data == {"fileName": "lease.pdf", "fileKey": "abc_lease.pdf"}
    events = await db.list_events("s1")
    assert [ev["event_type"] for ev in events] == ["status_update"]
    assert events[0]["payload"]["id"] == record.id
    assert events[0]["payload"]["createdAt"] == record.created_at
