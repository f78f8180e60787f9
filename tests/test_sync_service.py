import asyncio

import pytest

from core.errors import ItemNotFound, StorageUnavailable
from models.operations import ATTACHMENT_QUEUE, ENTITY_QUEUE, SESSION_QUEUE
from models.queue_item import QueueItem
from models.sync_metadata import LAST_SYNC_TIME, SYNC_IN_PROGRESS
from services.sync_service import SKIP_IN_PROGRESS, SKIP_OFFLINE


def test_happy_path_removes_session_and_stamps_last_sync(make_service, store, remote, network):
    service = make_service()

    async def scenario():
        await service.queue_session("lmra-1", {"title": "Steiger"}, "create")
        network.set_online(True)
        return await service.sync_now()

    report = asyncio.run(scenario())

    assert report.ran
    assert report.synced == {SESSION_QUEUE: 1}
    assert remote.calls == [("POST", "/api/lmra-sessions")]
    assert store.get(SESSION_QUEUE, "lmra-1") is None
    assert store.get_meta(LAST_SYNC_TIME) is not None
    assert service.get_stats().last_sync_time is not None


def test_update_and_complete_patch_the_session(make_service, remote, network):
    service = make_service()

    async def scenario():
        await service.queue_session("lmra-1", {"status": "done"}, "complete")
        await service.queue_session("lmra-2", {"status": "open"}, "update")
        network.set_online(True)
        await service.sync_now()

    asyncio.run(scenario())

    assert sorted(remote.calls) == [
        ("PATCH", "/api/lmra-sessions/lmra-1"),
        ("PATCH", "/api/lmra-sessions/lmra-2"),
    ]


def test_offline_sync_is_a_no_op(make_service, store, remote):
    service = make_service()

    async def scenario():
        await service.queue_session("lmra-1", {}, "create")
        await service.queue_entity("proj-1", {"name": "A12"}, "create")
        return await service.sync_now()

    report = asyncio.run(scenario())

    assert report.skipped == SKIP_OFFLINE
    assert remote.calls == []
    assert store.count(SESSION_QUEUE) == 1
    assert store.count(ENTITY_QUEUE) == 1
    assert store.get_meta(LAST_SYNC_TIME) is None


def test_queues_drain_sessions_then_projects_then_photos(make_service, remote, network):
    service = make_service()

    async def scenario():
        await service.queue_attachment("photo-1", "lmra-1", b"\xff\xd8", "a.jpg", "hazard")
        await service.queue_entity("proj-1", {"name": "A12"}, "update")
        await service.queue_session("lmra-1", {}, "create")
        await service.queue_session("lmra-2", {}, "create")
        network.set_online(True)
        await service.sync_now()

    asyncio.run(scenario())

    assert remote.paths() == [
        "/api/lmra-sessions",
        "/api/lmra-sessions",
        "/api/projects/proj-1",
        "/api/lmra-sessions/photos",
    ]


def test_concurrent_sync_runs_a_single_pass(make_service, remote, network):
    service = make_service()

    async def scenario():
        await service.queue_session("lmra-1", {}, "create")
        network.set_online(True)
        remote.gate = asyncio.Event()
        first = asyncio.create_task(service.sync_now())
        await asyncio.sleep(0)
        assert service.running
        second = await service.sync_now()
        remote.gate.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert first.ran
    assert second.skipped == SKIP_IN_PROGRESS
    assert remote.calls == [("POST", "/api/lmra-sessions")]
    assert not service.running


def test_failure_keeps_item_and_records_error(make_service, store, remote, network):
    service = make_service()
    remote.fail_paths["/api/projects"] = 1

    async def scenario():
        await service.queue_entity("tmp-1", {"name": "A12"}, "create", temp_id="tmp-1")
        await service.queue_session("lmra-1", {}, "create")
        network.set_online(True)
        return await service.sync_now()

    report = asyncio.run(scenario())

    assert report.failed == {ENTITY_QUEUE: 1}
    assert report.synced == {SESSION_QUEUE: 1}
    item = store.get(ENTITY_QUEUE, "tmp-1")
    assert item.retry_count == 1
    assert "500" in item.last_error
    assert item.temp_id == "tmp-1"
    assert "syncStatus" not in item.payload


def test_exhausted_attachment_is_kept_and_reported_failed(make_service, store, remote, network):
    service = make_service()
    remote.fail_all = True

    async def scenario():
        await service.queue_attachment("photo-1", "lmra-1", b"jpeg", "a.jpg", "hazard")
        network.set_online(True)
        for _ in range(3):
            await service.sync_now()
        # a fourth trigger must not touch the exhausted item
        await service.sync_now()

    asyncio.run(scenario())

    assert len(remote.calls) == 3
    item = store.get(ATTACHMENT_QUEUE, "photo-1")
    assert item is not None
    assert item.retry_count == 3
    assert item.last_error
    assert item.payload["syncStatus"] == "sync_failed"
    stats = service.get_stats()
    assert stats.failed(ATTACHMENT_QUEUE) == 1
    assert stats.pending(ATTACHMENT_QUEUE) == 1
    failures = service.failed_items()[ATTACHMENT_QUEUE]
    assert failures[0]["key"] == "photo-1"
    assert failures[0]["retryCount"] == 3


def test_manual_retry_syncs_exhausted_item(make_service, store, remote, network):
    service = make_service()
    remote.fail_all = True

    async def scenario():
        await service.queue_attachment("photo-1", "lmra-1", b"jpeg", "a.jpg", "hazard")
        network.set_online(True)
        for _ in range(3):
            await service.sync_now()
        remote.fail_all = False
        return await service.retry(ATTACHMENT_QUEUE, "photo-1")

    report = asyncio.run(scenario())

    assert report.synced == {ATTACHMENT_QUEUE: 1}
    assert store.get(ATTACHMENT_QUEUE, "photo-1") is None
    assert service.get_stats().failed(ATTACHMENT_QUEUE) == 0


def test_retry_while_offline_only_resets(make_service, store, remote):
    service = make_service(max_retries=1)
    store.put(
        SESSION_QUEUE,
        QueueItem(
            key="lmra-1",
            operation="update",
            payload={"syncStatus": "sync_failed", "syncError": "HTTP 500"},
            retry_count=1,
            last_error="HTTP 500",
        ),
    )

    result = asyncio.run(service.retry(SESSION_QUEUE, "lmra-1"))

    assert result is None
    assert remote.calls == []
    item = store.get(SESSION_QUEUE, "lmra-1")
    assert item.retry_count == 0
    assert item.last_error is None
    assert item.payload == {"syncStatus": "pending_sync"}


def test_retry_unknown_key_raises(make_service):
    service = make_service()

    with pytest.raises(ItemNotFound):
        asyncio.run(service.retry(ENTITY_QUEUE, "missing"))


def test_clear_all_empties_every_queue(make_service):
    service = make_service()

    async def scenario():
        await service.queue_session("lmra-1", {}, "create")
        await service.queue_entity("proj-1", {}, "delete")
        await service.queue_attachment("photo-1", "lmra-1", b"x", "a.jpg", "hazard")

    asyncio.run(scenario())
    service.clear_all()

    stats = service.get_stats()
    for name in (SESSION_QUEUE, ENTITY_QUEUE, ATTACHMENT_QUEUE):
        assert stats.pending(name) == 0
        assert stats.failed(name) == 0


def test_enqueue_while_online_triggers_background_sync(make_service, store, remote, network):
    service = make_service()
    network.set_online(True)

    async def scenario():
        await service.queue_entity("proj-1", {"name": "A12"}, "member_add")
        await service.wait_for_background()

    asyncio.run(scenario())

    assert remote.calls == [("POST", "/api/projects/proj-1/members")]
    assert store.count(ENTITY_QUEUE) == 0


def test_unknown_operation_is_rejected(make_service, store):
    service = make_service()

    with pytest.raises(ValueError):
        asyncio.run(service.queue_entity("proj-1", {}, "archive"))
    assert store.count(ENTITY_QUEUE) == 0


def test_stale_in_progress_flag_is_cleared_on_initialize(make_service, store):
    store.set_meta(SYNC_IN_PROGRESS, True)
    service = make_service()

    service.initialize()

    assert store.get_meta(SYNC_IN_PROGRESS) is False
    assert service.get_stats().sync_in_progress is False


def test_backoff_defers_the_next_attempt(make_service, store, remote, network):
    service = make_service(retry_backoff_sec=60.0)
    remote.fail_all = True

    async def scenario():
        await service.queue_session("lmra-1", {}, "create")
        network.set_online(True)
        await service.sync_now()
        await service.sync_now()

    asyncio.run(scenario())

    assert len(remote.calls) == 1
    item = store.get(SESSION_QUEUE, "lmra-1")
    assert item.retry_count == 1
    assert item.next_attempt_at is not None


def test_storage_failure_propagates_and_releases_flag(make_service, store, network):
    service = make_service()
    network.set_online(True)
    store.close()
    store.db_path = store.db_path.parent / "missing-dir" / "x" / "offline.db"
    store.db_path.parent.parent.write_text("not a directory", encoding="utf-8")

    with pytest.raises(StorageUnavailable):
        asyncio.run(service.sync_now())
    assert not service.running


async def _wait_for_first_call(remote):
    for _ in range(500):
        if remote.calls:
            return
        await asyncio.sleep(0)
    raise AssertionError("remote was never called")


def test_session_edited_during_sync_is_sent_on_next_pass(make_service, store, remote, network):
    service = make_service()

    async def scenario():
        await service.queue_session("lmra-1", {"v": 1}, "create")
        network.set_online(True)
        remote.gate = asyncio.Event()
        first = asyncio.create_task(service.sync_now())
        await _wait_for_first_call(remote)
        await service.queue_session("lmra-1", {"v": 2}, "update")
        remote.gate.set()
        report = await first
        await service.wait_for_background()
        kept = store.get(SESSION_QUEUE, "lmra-1")
        remote.gate = None
        await service.sync_now()
        return report, kept

    report, kept = asyncio.run(scenario())

    assert report.synced == {SESSION_QUEUE: 1}
    assert kept is not None
    assert kept.operation == "update"
    assert kept.payload["v"] == 2
    assert kept.retry_count == 0
    assert remote.calls == [
        ("POST", "/api/lmra-sessions"),
        ("PATCH", "/api/lmra-sessions/lmra-1"),
    ]
    assert store.get(SESSION_QUEUE, "lmra-1") is None


def test_failed_attempt_does_not_overwrite_newer_edit(make_service, store, remote, network):
    service = make_service()
    remote.fail_all = True

    async def scenario():
        await service.queue_session("lmra-1", {"v": 1}, "create")
        network.set_online(True)
        remote.gate = asyncio.Event()
        first = asyncio.create_task(service.sync_now())
        await _wait_for_first_call(remote)
        await service.queue_session("lmra-1", {"v": 2}, "update")
        remote.gate.set()
        report = await first
        await service.wait_for_background()
        return report

    report = asyncio.run(scenario())

    assert report.failed == {SESSION_QUEUE: 1}
    item = store.get(SESSION_QUEUE, "lmra-1")
    assert item.operation == "update"
    assert item.payload["v"] == 2
    assert item.retry_count == 0
    assert item.last_error is None


def test_unanswered_request_times_out_and_counts_as_failure(make_service, store, remote, network):
    service = make_service(request_timeout_sec=0.1)
    remote.gate = asyncio.Event()

    async def scenario():
        await service.queue_session("lmra-1", {}, "create")
        network.set_online(True)
        return await service.sync_now()

    report = asyncio.run(scenario())

    assert report.ran
    assert report.failed == {SESSION_QUEUE: 1}
    item = store.get(SESSION_QUEUE, "lmra-1")
    assert item.retry_count == 1
    assert "No answer within 0.1s" in item.last_error
    assert not service.running
