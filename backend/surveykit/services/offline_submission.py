"""
Offline submission editing session.

One ``OfflineSubmissionManager`` per submission being edited. Answers live in
memory and are persisted to the local store (and queued for sync) whenever the
user saves while the server is unreachable. Errors are kept on the session
(``error``) instead of being raised, so a form can keep working offline.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.config import settings
from ..core.exceptions import LocalStoreError
from ..models.offline import (
    EntityType,
    OfflineSubmission,
    QueueItemType,
    SubmissionStatus,
    SyncPriority,
    SyncQueueItem,
    utcnow,
)
from .local_store import LocalStore, QueueListener, notify_queue_changed

logger = logging.getLogger(__name__)

SAVED_LOCALLY = "locally"
SAVED_TO_SERVER = "server"


@dataclass
class CurrentUser:
    id: Optional[int] = None
    institution_id: Optional[int] = None


@dataclass
class SaveResult:
    local_id: str
    saved: str  # "locally" | "server"


UserProvider = Union[CurrentUser, Callable[[], Optional[CurrentUser]]]


def local_id_for(existing_submission_id: Optional[int] = None) -> str:
    """``server-<id>`` for a known server submission, a fresh UUID otherwise."""
    if existing_submission_id is not None:
        return f"server-{existing_submission_id}"
    return str(uuid.uuid4())


class OfflineSubmissionManager:
    """Editing state and offline persistence for a single submission."""

    def __init__(
        self,
        questionnaire_id: int,
        store: LocalStore,
        monitor,
        user_provider: UserProvider,
        existing_submission_id: Optional[int] = None,
        initial_answers: Optional[Dict[str, Any]] = None,
        autosave_interval: Optional[float] = None,
        on_queue_changed: Optional[QueueListener] = None,
    ):
        self.questionnaire_id = questionnaire_id
        self.store = store
        self.monitor = monitor
        self.user_provider = user_provider
        self.existing_submission_id = existing_submission_id
        self.on_queue_changed = on_queue_changed
        self.local_id = local_id_for(existing_submission_id)
        self.autosave_interval = (
            settings.AUTOSAVE_INTERVAL_SECONDS if autosave_interval is None else autosave_interval
        )

        self.answers: Dict[str, Any] = dict(initial_answers or {})
        self.modified_questions: List[str] = []
        self.status = SubmissionStatus.DRAFT
        self.saving = False
        self.saved_locally = False
        self.last_saved_at = None
        self.error: Optional[str] = None

        self._save_lock = asyncio.Lock()
        self._autosave_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    def _current_user(self) -> Optional[CurrentUser]:
        if callable(self.user_provider):
            return self.user_provider()
        return self.user_provider

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def load(self) -> Optional[OfflineSubmission]:
        """Restore a previously saved local copy of this submission, if any."""
        try:
            record = await self.store.get(EntityType.SUBMISSIONS, self.local_id)
        except LocalStoreError as exc:
            self.error = str(exc)
            logger.error("Failed to load offline submission %s: %s", self.local_id, exc)
            return None
        if record is None:
            return None
        self.answers = dict(record.answers)
        self.modified_questions = list(record.modified_questions)
        self.status = record.status
        self.saved_locally = True
        self.last_saved_at = record.updated_at
        logger.debug("Loaded offline submission %s", self.local_id)
        return record

    def update_answer(self, question_name: str, value: Any) -> None:
        self.answers[question_name] = value
        if question_name not in self.modified_questions:
            self.modified_questions.append(question_name)

    def set_answers(self, answers: Dict[str, Any]) -> None:
        self.answers = dict(answers)
        self.modified_questions = list(answers)

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def save_submission(self, status: str = SubmissionStatus.DRAFT) -> Optional[SaveResult]:
        """Save the session.

        Offline, the snapshot is written to the local store and queued for sync.
        Online, nothing is written locally and the caller saves to the server.
        Returns None (with ``error`` set) when the save could not happen.
        """
        if status not in SubmissionStatus.ALL:
            self.error = f"Invalid status '{status}'"
            return None

        user = self._current_user()
        if user is None or user.institution_id is None:
            self.error = "User institution not found"
            logger.warning("Cannot save submission %s: %s", self.local_id, self.error)
            return None

        if self.is_online:
            self.status = status
            self.error = None
            return SaveResult(self.local_id, SAVED_TO_SERVER)

        async with self._save_lock:
            self.saving = True
            try:
                saved_at = await self._save_locally(status, user.institution_id)
            except LocalStoreError as exc:
                self.error = str(exc)
                logger.error("Failed to save submission %s offline: %s", self.local_id, exc)
                return None
            finally:
                self.saving = False

        self.status = status
        self.saved_locally = True
        self.last_saved_at = saved_at
        self.error = None
        logger.info("Saved submission %s offline (%s)", self.local_id, status)
        await notify_queue_changed(self.on_queue_changed)
        return SaveResult(self.local_id, SAVED_LOCALLY)

    async def _save_locally(self, status: str, institution_id: int):
        existing = await self.store.get(EntityType.SUBMISSIONS, self.local_id)
        now = utcnow()
        if existing is not None and now <= existing.updated_at:
            now = existing.updated_at + timedelta(microseconds=1)

        server_id = self.existing_submission_id
        if existing is not None and existing.id is not None:
            server_id = existing.id

        await self.store.put(
            EntityType.SUBMISSIONS,
            OfflineSubmission(
                local_id=self.local_id,
                questionnaire_id=self.questionnaire_id,
                institution_id=institution_id,
                status=status,
                answers=dict(self.answers),
                synced=False,
                id=server_id,
                synced_at=existing.synced_at if existing is not None else None,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
                modified_questions=list(self.modified_questions),
            ),
        )
        try:
            await self._ensure_queued(SyncPriority.for_status(status))
        except LocalStoreError:
            # Every unsynced row has a queue entry
            if existing is not None:
                await self.store.put(EntityType.SUBMISSIONS, existing)
            else:
                await self.store.delete(EntityType.SUBMISSIONS, self.local_id)
            raise
        return now

    async def _ensure_queued(self, priority: int) -> None:
        entries = await self.store.query(
            EntityType.SYNC_QUEUE,
            where={"item_type": QueueItemType.SUBMISSION, "item_id": self.local_id},
        )
        if not entries:
            await self.store.put(
                EntityType.SYNC_QUEUE,
                SyncQueueItem(
                    item_type=QueueItemType.SUBMISSION,
                    item_id=self.local_id,
                    priority=priority,
                ),
            )
            return
        entry = entries[0]
        if priority < entry.priority:
            await self.store.update(EntityType.SYNC_QUEUE, entry.id, priority=priority)

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------

    def start_autosave(self) -> None:
        if self.autosave_interval <= 0 or self._autosave_task is not None:
            return
        self._autosave_task = asyncio.create_task(self._run_autosave())

    async def stop_autosave(self) -> None:
        task, self._autosave_task = self._autosave_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run_autosave(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            if self.is_online or not self.answers or self.saving:
                continue
            logger.debug("Autosaving submission %s", self.local_id)
            await self.save_submission(self.status)


async def list_offline_submissions(store: LocalStore) -> Dict[str, Any]:
    """Local submissions, most recently edited first, with their sync state."""
    submissions = await store.query(EntityType.SUBMISSIONS, order_by=("updated_at",))
    queue = {
        entry.item_id: entry
        for entry in await store.query(EntityType.SYNC_QUEUE, where={"item_type": QueueItemType.SUBMISSION})
    }

    items = []
    for submission in reversed(submissions):
        entry = queue.get(submission.local_id)
        if submission.synced:
            sync_status = "synced"
        elif entry is not None and entry.error:
            sync_status = "error"
        else:
            sync_status = "pending"
        items.append({
            "local_id": submission.local_id,
            "id": submission.id,
            "questionnaire_id": submission.questionnaire_id,
            "status": submission.status,
            "sync_status": sync_status,
            "error": entry.error if entry is not None else None,
            "updated_at": submission.updated_at,
        })
    return {
        "submissions": items,
        "pending_count": sum(1 for item in items if item["sync_status"] != "synced"),
    }
