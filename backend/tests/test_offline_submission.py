"""Tests for offline submission editing sessions."""
import asyncio
import uuid

from surveykit.core.exceptions import LocalStoreError
from surveykit.models.offline import EntityType
from surveykit.services.local_store import InMemoryLocalStore
from surveykit.services.offline_submission import (
    CurrentUser,
    OfflineSubmissionManager,
    SaveResult,
    list_offline_submissions,
    local_id_for,
)


class FailingStore(InMemoryLocalStore):
    async def put(self, entity_type, entity):
        raise LocalStoreError("disk full")


class QueueFailingStore(InMemoryLocalStore):
    """Accepts submission writes but fails queue writes once ``fail_queue`` is set."""

    fail_queue = True

    async def put(self, entity_type, entity):
        if entity_type == EntityType.SYNC_QUEUE and self.fail_queue:
            raise LocalStoreError("disk full")
        return await super().put(entity_type, entity)

    async def update(self, entity_type, key, expected=None, **changes):
        if entity_type == EntityType.SYNC_QUEUE and self.fail_queue:
            raise LocalStoreError("disk full")
        return await super().update(entity_type, key, expected=expected, **changes)


def _manager(store, monitor, user, **kwargs):
    return OfflineSubmissionManager(1, store, monitor, user, **kwargs)


class TestIdentity:
    def test_new_submission_gets_uuid(self):
        local_id = local_id_for()
        assert str(uuid.UUID(local_id)) == local_id
        assert local_id_for() != local_id

    def test_existing_submission_is_deterministic(self):
        assert local_id_for(42) == "server-42"
        assert local_id_for(42) == local_id_for(42)

    async def test_initial_answers_seed_session(self, memory_store, monitor, user):
        mgr = _manager(memory_store, monitor, user, initial_answers={"q1": "a"})
        assert mgr.answers == {"q1": "a"}
        assert mgr.modified_questions == []


class TestAnswers:
    async def test_update_answer_tracks_modified_once_in_order(self, memory_store, monitor, user):
        mgr = _manager(memory_store, monitor, user)
        mgr.update_answer("q2", 1)
        mgr.update_answer("q1", "x")
        mgr.update_answer("q2", 2)
        assert mgr.answers == {"q2": 2, "q1": "x"}
        assert mgr.modified_questions == ["q2", "q1"]

    async def test_set_answers_replaces_everything(self, memory_store, monitor, user):
        mgr = _manager(memory_store, monitor, user, initial_answers={"old": 1})
        mgr.update_answer("q9", 9)
        mgr.set_answers({"b": 2, "a": 1})
        assert mgr.answers == {"b": 2, "a": 1}
        assert mgr.modified_questions == ["b", "a"]


class TestSaveOffline:
    async def test_save_writes_record_and_single_queue_entry(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        mgr.update_answer("q1", "a")

        result = await mgr.save_submission()
        assert result == SaveResult(mgr.local_id, "locally")
        assert mgr.saved_locally is True
        assert mgr.last_saved_at is not None

        record = await store.get(EntityType.SUBMISSIONS, mgr.local_id)
        assert record.answers == {"q1": "a"}
        assert record.status == "draft"
        assert record.synced is False
        assert record.institution_id == 3

        queue = await store.query(EntityType.SYNC_QUEUE)
        assert [(q.item_type, q.item_id, q.priority) for q in queue] == [("submission", mgr.local_id, 2)]

    async def test_repeated_saves_keep_one_row_and_entry(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        mgr.update_answer("q1", "a")
        await mgr.save_submission()
        first = await store.get(EntityType.SUBMISSIONS, mgr.local_id)

        mgr.update_answer("q1", "b")
        await mgr.save_submission()
        second = await store.get(EntityType.SUBMISSIONS, mgr.local_id)

        assert await store.count(EntityType.SUBMISSIONS) == 1
        assert await store.count(EntityType.SYNC_QUEUE) == 1
        assert second.answers == {"q1": "b"}
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    async def test_submitted_gets_high_priority(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        await mgr.save_submission("submitted")
        queue = await store.query(EntityType.SYNC_QUEUE)
        assert queue[0].priority == 1

    async def test_resave_as_submitted_upgrades_priority(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        await mgr.save_submission("draft")
        await mgr.save_submission("submitted")
        await mgr.save_submission("draft")
        queue = await store.query(EntityType.SYNC_QUEUE)
        assert len(queue) == 1
        assert queue[0].priority == 1

    async def test_preserves_recorded_server_id(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        await mgr.save_submission()
        await store.update(EntityType.SUBMISSIONS, mgr.local_id, id=55, synced=True)
        await store.delete(EntityType.SYNC_QUEUE, (await store.query(EntityType.SYNC_QUEUE))[0].id)

        mgr.update_answer("q1", "later")
        await mgr.save_submission()
        record = await store.get(EntityType.SUBMISSIONS, mgr.local_id)
        assert record.id == 55
        assert record.synced is False
        assert await store.count(EntityType.SYNC_QUEUE) == 1

    async def test_existing_server_submission_keeps_its_id(self, store, monitor, user):
        mgr = _manager(store, monitor, user, existing_submission_id=9)
        await mgr.save_submission()
        record = await store.get(EntityType.SUBMISSIONS, "server-9")
        assert record.id == 9

    async def test_missing_institution_blocks_save(self, store, monitor):
        mgr = _manager(store, monitor, CurrentUser(id=1, institution_id=None))
        assert await mgr.save_submission() is None
        assert mgr.error == "User institution not found"
        assert await store.count(EntityType.SUBMISSIONS) == 0
        assert await store.count(EntityType.SYNC_QUEUE) == 0

    async def test_user_provider_callable_and_none(self, store, monitor, user):
        current = {"user": None}
        mgr = _manager(store, monitor, lambda: current["user"])
        assert await mgr.save_submission() is None
        assert mgr.error == "User institution not found"

        current["user"] = user
        assert (await mgr.save_submission()).saved == "locally"
        assert mgr.error is None

    async def test_invalid_status_rejected(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        assert await mgr.save_submission("archived") is None
        assert "archived" in mgr.error

    async def test_storage_failure_sets_error(self, monitor, user):
        mgr = _manager(FailingStore(), monitor, user)
        mgr.update_answer("q1", "a")
        assert await mgr.save_submission() is None
        assert mgr.error == "disk full"
        assert mgr.saving is False
        assert mgr.saved_locally is False

    async def test_queue_failure_rolls_back_new_record(self, monitor, user):
        store = QueueFailingStore()
        mgr = _manager(store, monitor, user)
        mgr.update_answer("q1", "a")
        assert await mgr.save_submission() is None
        assert mgr.error == "disk full"
        assert await store.get(EntityType.SUBMISSIONS, mgr.local_id) is None
        assert await store.count(EntityType.SYNC_QUEUE) == 0

    async def test_queue_failure_restores_previous_record(self, monitor, user):
        store = QueueFailingStore()
        store.fail_queue = False
        mgr = _manager(store, monitor, user)
        mgr.update_answer("q1", "first")
        await mgr.save_submission("draft")

        store.fail_queue = True
        mgr.update_answer("q1", "second")
        assert await mgr.save_submission("submitted") is None
        record = await store.get(EntityType.SUBMISSIONS, mgr.local_id)
        assert record.answers == {"q1": "first"}
        assert record.status == "draft"
        queue = await store.query(EntityType.SYNC_QUEUE)
        assert [(q.item_id, q.priority) for q in queue] == [(mgr.local_id, 2)]

    async def test_queue_change_reported_after_save(self, store, monitor, user):
        changes = []

        async def on_queue_changed():
            changes.append(await store.count(EntityType.SYNC_QUEUE))

        mgr = _manager(store, monitor, user, on_queue_changed=on_queue_changed)
        await mgr.save_submission()
        await mgr.save_submission("submitted")
        assert changes == [1, 1]

    async def test_failing_queue_observer_does_not_fail_save(self, store, monitor, user):
        async def on_queue_changed():
            raise LocalStoreError("count failed")

        mgr = _manager(store, monitor, user, on_queue_changed=on_queue_changed)
        assert (await mgr.save_submission()).saved == "locally"
        assert mgr.error is None

    async def test_no_queue_change_reported_on_failure(self, monitor, user):
        changes = []

        async def on_queue_changed():
            changes.append(True)

        mgr = _manager(QueueFailingStore(), monitor, user, on_queue_changed=on_queue_changed)
        assert await mgr.save_submission() is None
        assert changes == []

    async def test_success_clears_previous_error(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        mgr.error = "stale"
        await mgr.save_submission()
        assert mgr.error is None

    async def test_concurrent_saves_yield_one_queue_entry(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        mgr.update_answer("q1", "a")
        results = await asyncio.gather(mgr.save_submission(), mgr.save_submission("submitted"))
        assert all(r is not None for r in results)
        queue = await store.query(EntityType.SYNC_QUEUE)
        assert len(queue) == 1
        assert queue[0].priority == 1


class TestSaveOnline:
    async def test_online_save_writes_nothing_locally(self, store, monitor, probe, native, user):
        probe.reachable = True
        native.set_online(True)
        await monitor.wait_for_pending_checks()
        assert monitor.is_online

        mgr = _manager(store, monitor, user)
        mgr.update_answer("q1", "a")
        mgr.error = "old"
        result = await mgr.save_submission()
        assert result == SaveResult(mgr.local_id, "server")
        assert mgr.error is None
        assert await store.count(EntityType.SUBMISSIONS) == 0
        assert await store.count(EntityType.SYNC_QUEUE) == 0


class TestLoadAndAutosave:
    async def test_load_restores_saved_session(self, store, monitor, user):
        first = _manager(store, monitor, user, existing_submission_id=5)
        first.update_answer("q1", "a")
        await first.save_submission("submitted")

        second = _manager(store, monitor, user, existing_submission_id=5)
        record = await second.load()
        assert record is not None
        assert second.answers == {"q1": "a"}
        assert second.modified_questions == ["q1"]
        assert second.status == "submitted"
        assert second.saved_locally is True
        assert second.last_saved_at == record.updated_at

    async def test_load_without_record(self, store, monitor, user):
        mgr = _manager(store, monitor, user)
        assert await mgr.load() is None
        assert mgr.saved_locally is False

    async def test_autosave_while_offline(self, memory_store, monitor, user):
        mgr = _manager(memory_store, monitor, user, autosave_interval=0.01)
        mgr.start_autosave()
        try:
            await asyncio.sleep(0.03)
            assert await memory_store.count(EntityType.SUBMISSIONS) == 0

            mgr.update_answer("q1", "typed")
            for _ in range(100):
                if await memory_store.count(EntityType.SUBMISSIONS):
                    break
                await asyncio.sleep(0.01)
        finally:
            await mgr.stop_autosave()
        record = await memory_store.get(EntityType.SUBMISSIONS, mgr.local_id)
        assert record.answers == {"q1": "typed"}
        assert mgr.saved_locally is True


class TestListOfflineSubmissions:
    async def test_sync_status_derivation(self, store, monitor, user):
        synced = _manager(store, monitor, user)
        await synced.save_submission()
        entry = (await store.query(EntityType.SYNC_QUEUE, where={"item_id": synced.local_id}))[0]
        await store.delete(EntityType.SYNC_QUEUE, entry.id)
        await store.update(EntityType.SUBMISSIONS, synced.local_id, synced=True, id=1)

        failing = _manager(store, monitor, user)
        await failing.save_submission()
        entry = (await store.query(EntityType.SYNC_QUEUE, where={"item_id": failing.local_id}))[0]
        await store.update(EntityType.SYNC_QUEUE, entry.id, attempts=1, error="503")

        pending = _manager(store, monitor, user)
        await pending.save_submission()

        listing = await list_offline_submissions(store)
        by_id = {item["local_id"]: item["sync_status"] for item in listing["submissions"]}
        assert by_id == {
            synced.local_id: "synced",
            failing.local_id: "error",
            pending.local_id: "pending",
        }
        assert listing["pending_count"] == 2
        assert listing["submissions"][0]["local_id"] == pending.local_id

    async def test_empty_store(self, memory_store):
        assert await list_offline_submissions(memory_store) == {"submissions": [], "pending_count": 0}
