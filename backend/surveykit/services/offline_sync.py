"""
Offline Sync Engine.
Drains the local sync queue against the survey server whenever connectivity is
confirmed, so submissions and attachments captured offline reach the server.

A pass reads every queue entry ordered by priority (1 = submitted, 2 = draft,
3 = file) then age, and pushes them one at a time. A failing entry keeps its
place in the queue with ``attempts`` incremented and the error recorded; the
pass carries on with the next entry. Entries that reached ``max_attempts`` are
kept but skipped until retried explicitly or cleared.
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..core.config import settings
from ..core.exceptions import LocalStoreError, SyncDeferred, SyncItemError
from ..models.offline import EntityType, QueueItemType, SyncQueueItem, utcnow
from .local_store import LocalStore
from .merge import MergeService

logger = logging.getLogger(__name__)

QUEUE_ORDER = ("priority", "created_at", "id")


class ItemSyncStatus(str, Enum):
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class _Outcome(str, Enum):
    SYNCED = "synced"
    REQUEUED = "requeued"
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class CurrentItem:
    item_type: str
    item_id: str
    status: ItemSyncStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class SyncProgress:
    """Snapshot published to subscribers on every change."""
    syncing: bool = False
    completed: int = 0
    total: int = 0
    current_item: Optional[CurrentItem] = None
    pending_count: int = 0


SyncListener = Callable[[SyncProgress], None]


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Timed out waiting for the server"
    return str(exc) or exc.__class__.__name__


class SyncEngine:
    """Background reconciliation of the offline queue with the server."""

    def __init__(
        self,
        store: LocalStore,
        api,
        monitor=None,
        merge: Optional[MergeService] = None,
        max_attempts: Optional[int] = None,
        retry_delays: Optional[Sequence[float]] = None,
        request_timeout: Optional[float] = None,
        sync_interval: Optional[float] = None,
    ):
        self.store = store
        self.api = api
        self.monitor = monitor
        self.merge = merge or MergeService(api)
        self.max_attempts = max_attempts or settings.SYNC_MAX_ATTEMPTS
        self.retry_delays = list(settings.SYNC_RETRY_DELAYS if retry_delays is None else retry_delays)
        self.request_timeout = request_timeout or settings.SYNC_REQUEST_TIMEOUT
        self.sync_interval = settings.SYNC_INTERVAL_SECONDS if sync_interval is None else sync_interval

        self._progress = SyncProgress()
        self._listeners: List[SyncListener] = []
        self._syncing = False
        self._unsubscribe_monitor: Optional[Callable[[], None]] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._scheduled: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def pending_count(self) -> int:
        return self._progress.pending_count

    @property
    def progress(self) -> SyncProgress:
        return self._progress

    def subscribe(self, callback: SyncListener) -> Callable[[], None]:
        """Call ``callback`` now with the current snapshot and on every change."""
        self._listeners.append(callback)
        callback(self._progress)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _publish(self, **changes) -> None:
        self._progress = dataclasses.replace(self._progress, **changes)
        snapshot = self._progress
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Error in sync listener %r", listener)

    async def refresh_pending_count(self) -> int:
        count = await self.store.count(EntityType.SYNC_QUEUE)
        self._publish(pending_count=count)
        return count

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Sync on every transition to online and, if configured, periodically."""
        if self.monitor is not None and self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self.monitor.subscribe(self._on_connection_change)
        if self.sync_interval > 0 and self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._run_periodic_sync())

    async def stop(self) -> None:
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        tasks = list(self._scheduled)
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
            self._periodic_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()

    async def wait_idle(self) -> None:
        """Wait for syncs scheduled by connectivity changes to finish."""
        while self._scheduled:
            await asyncio.gather(*list(self._scheduled), return_exceptions=True)

    def _on_connection_change(self, online: bool) -> None:
        if not online:
            return
        logger.info("Connection confirmed, triggering sync")
        task = asyncio.get_running_loop().create_task(self.sync())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)

    async def _run_periodic_sync(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            if self.monitor is None or self.monitor.is_online:
                await self.sync()

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    async def sync(self) -> Optional[Dict]:
        """Run one pass over the queue.

        Returns ``{"synced", "failed", "removed", "skipped", "total"}``, or
        None when a pass was already running (the trigger is coalesced).
        """
        if self._syncing:
            logger.info("Sync already in progress, skipping")
            return None
        self._syncing = True

        results = {"synced": 0, "failed": 0, "removed": 0, "skipped": 0, "total": 0}
        try:
            await self._run_pass(results)
        except LocalStoreError as exc:
            logger.error("Sync pass aborted, local store failed: %s", exc)
        finally:
            self._syncing = False

        self._publish(syncing=False)
        try:
            await self.refresh_pending_count()
        except LocalStoreError as exc:
            logger.error("Could not count pending items: %s", exc)
        logger.info(
            "Sync complete: %d/%d synced, %d failed, %d skipped",
            results["synced"], results["total"], results["failed"], results["skipped"],
        )
        return results

    async def _run_pass(self, results: Dict) -> None:
        items = await self.store.query(EntityType.SYNC_QUEUE, order_by=QUEUE_ORDER)
        due = [item for item in items if item.attempts < self.max_attempts]
        results["skipped"] = len(items) - len(due)
        results["total"] = len(due)

        completed = 0
        self._publish(syncing=True, completed=0, total=len(due), current_item=None)
        if not due:
            logger.info("No items to sync")
            return
        logger.info("Found %d item(s) to sync", len(due))

        for item in due:
            self._publish(current_item=CurrentItem(item.item_type, item.item_id, ItemSyncStatus.SYNCING))
            try:
                outcome = await asyncio.wait_for(self._sync_item(item), timeout=self.request_timeout)
            except LocalStoreError:
                raise
            except SyncDeferred as exc:
                await self.store.update(
                    EntityType.SYNC_QUEUE, item.id, error=str(exc), last_attempt_at=utcnow()
                )
                results["failed"] += 1
                logger.info("Deferred %s %s: %s", item.item_type, item.item_id, exc)
                self._publish(current_item=CurrentItem(
                    item.item_type, item.item_id, ItemSyncStatus.ERROR, str(exc)
                ))
                continue
            except Exception as exc:
                message = _error_message(exc)
                await self._record_failure(item, message)
                results["failed"] += 1
                self._publish(current_item=CurrentItem(
                    item.item_type, item.item_id, ItemSyncStatus.ERROR, message
                ))
                continue

            completed += 1
            if outcome == _Outcome.ORPHANED:
                results["removed"] += 1
            else:
                results["synced"] += 1
            self._publish(
                completed=completed,
                current_item=CurrentItem(item.item_type, item.item_id, ItemSyncStatus.SUCCESS),
            )
            logger.info("Synced %s %s (%d/%d)", item.item_type, item.item_id, completed, len(due))

    async def _record_failure(self, item: SyncQueueItem, message: str) -> None:
        attempts = item.attempts + 1
        await self.store.update(
            EntityType.SYNC_QUEUE, item.id,
            attempts=attempts, last_attempt_at=utcnow(), error=message,
        )
        if attempts >= self.max_attempts:
            logger.error(
                "Max attempts (%d) reached for %s %s: %s",
                self.max_attempts, item.item_type, item.item_id, message,
            )
        else:
            logger.warning(
                "Failed to sync %s %s (attempt %d/%d): %s",
                item.item_type, item.item_id, attempts, self.max_attempts, message,
            )

    async def _sync_item(self, item: SyncQueueItem) -> _Outcome:
        if item.item_type == QueueItemType.SUBMISSION:
            return await self._sync_submission(item)
        if item.item_type == QueueItemType.FILE:
            return await self._sync_file(item)
        logger.warning("Unknown queue item type %r, removing entry %s", item.item_type, item.id)
        await self.store.delete(EntityType.SYNC_QUEUE, item.id)
        return _Outcome.ORPHANED

    async def _sync_submission(self, item: SyncQueueItem) -> _Outcome:
        local = await self.store.get(EntityType.SUBMISSIONS, item.item_id)
        if local is None:
            logger.warning("Submission %s not found locally, removing queue entry", item.item_id)
            await self.store.delete(EntityType.SYNC_QUEUE, item.id)
            return _Outcome.ORPHANED
        if local.synced:
            await self.store.delete(EntityType.SYNC_QUEUE, item.id)
            return _Outcome.SYNCED

        payload = {
            "local_id": local.local_id,
            "questionnaire_id": local.questionnaire_id,
            "institution_id": local.institution_id,
            "status": local.status,
            "answers_json": local.answers,
        }
        if local.id is not None:
            merged = await self.merge.merge_submission(local, local.id)
            payload["answers_json"] = merged.merged_answers
            await self.api.update_submission(local.id, payload)
            server_id = local.id
        else:
            response = await self.api.create_submission(payload)
            server_id = int(response["id"])

        synced = await self.store.update(
            EntityType.SUBMISSIONS, local.local_id,
            expected={"updated_at": local.updated_at},
            id=server_id,
            answers=payload["answers_json"],
            synced=True,
            synced_at=utcnow(),
            modified_questions=[],
        )
        if synced is None:
            # Edited (or deleted) while the upload was in flight; the newer
            # answers go out on the next pass under the same server id.
            await self.store.update(EntityType.SUBMISSIONS, local.local_id, id=server_id)
            logger.info("Submission %s changed during upload, keeping it queued", local.local_id)
            return _Outcome.REQUEUED

        await self.store.delete(EntityType.SYNC_QUEUE, item.id)
        return _Outcome.SYNCED

    async def _sync_file(self, item: SyncQueueItem) -> _Outcome:
        record = await self.store.get(EntityType.FILES, item.item_id)
        if record is None:
            logger.warning("File %s not found locally, removing queue entry", item.item_id)
            await self.store.delete(EntityType.SYNC_QUEUE, item.id)
            return _Outcome.ORPHANED
        if record.synced and record.uploaded_path:
            await self.store.delete(EntityType.SYNC_QUEUE, item.id)
            return _Outcome.SYNCED
        if record.blob is None:
            raise SyncItemError(f"File {record.id} has no data (it may have been cleaned up)")

        parent = await self.store.get(EntityType.SUBMISSIONS, record.submission_local_id)
        if parent is not None and parent.id is None:
            raise SyncDeferred(f"Submission {record.submission_local_id} has not been synced yet")

        response = await self.api.upload_file(
            submission_local_id=record.submission_local_id,
            submission_id=parent.id if parent is not None else None,
            question_name=record.question_name,
            file_name=record.file_name,
            file_type=record.file_type,
            content=record.blob,
        )
        await self.store.update(
            EntityType.FILES, record.id, synced=True, uploaded_path=response["path"]
        )
        await self.store.delete(EntityType.SYNC_QUEUE, item.id)
        # Blob goes only once the entry is gone
        await self.store.update(EntityType.FILES, record.id, blob=None)
        return _Outcome.SYNCED

    # ------------------------------------------------------------------
    # Queue maintenance
    # ------------------------------------------------------------------

    async def retry(self, queue_id: int) -> None:
        """Retry one entry after an exponential back-off delay; raises on failure."""
        item = await self.store.get(EntityType.SYNC_QUEUE, queue_id)
        if item is None:
            raise SyncItemError(f"Sync queue item {queue_id} not found")

        delay = 0.0
        if self.retry_delays:
            delay = self.retry_delays[min(item.attempts, len(self.retry_delays) - 1)]
        logger.info("Retrying %s %s after %.1fs", item.item_type, item.item_id, delay)
        await asyncio.sleep(delay)

        if self._syncing:
            raise SyncItemError("A sync pass is already in progress")
        self._syncing = True
        try:
            await asyncio.wait_for(self._sync_item(item), timeout=self.request_timeout)
        except SyncDeferred:
            raise
        except LocalStoreError:
            raise
        except Exception as exc:
            await self._record_failure(item, _error_message(exc))
            raise
        finally:
            self._syncing = False
        logger.info("Retry successful for %s %s", item.item_type, item.item_id)
        await self.refresh_pending_count()

    async def get_queue_status(self) -> Dict[str, int]:
        items = await self.store.query(EntityType.SYNC_QUEUE)
        failed = sum(1 for item in items if item.attempts >= self.max_attempts)
        return {"pending": len(items) - failed, "failed": failed, "total": len(items)}

    async def clear_failed_items(self) -> int:
        """Permanently drop entries that reached the attempt ceiling."""
        items = await self.store.query(EntityType.SYNC_QUEUE)
        failed = [item for item in items if item.attempts >= self.max_attempts]
        for item in failed:
            await self.store.delete(EntityType.SYNC_QUEUE, item.id)
        logger.info("Cleared %d failed item(s)", len(failed))
        await self.refresh_pending_count()
        return len(failed)
