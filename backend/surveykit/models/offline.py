"""
Client-side records kept in the offline local store.
Everything here may exist only on the device until the sync engine pushes it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so all local times stay naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntityType:
    QUESTIONNAIRES = "questionnaires"
    SUBMISSIONS = "submissions"
    FILES = "files"
    SYNC_QUEUE = "sync_queue"

    ALL = [QUESTIONNAIRES, SUBMISSIONS, FILES, SYNC_QUEUE]


class SubmissionStatus:
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = [DRAFT, SUBMITTED, APPROVED, REJECTED]


class QueueItemType:
    SUBMISSION = "submission"
    FILE = "file"


class SyncPriority:
    HIGH = 1
    NORMAL = 2
    LOW = 3

    @classmethod
    def for_status(cls, status: str) -> int:
        return cls.HIGH if status == SubmissionStatus.SUBMITTED else cls.NORMAL


@dataclass
class CachedQuestionnaire:
    """Immutable snapshot of a questionnaire definition, for rendering forms offline."""
    id: int
    code: str
    version: int
    title: str
    schema: Dict[str, Any]
    permissions: List[Dict[str, Any]] = field(default_factory=list)
    cached_at: datetime = field(default_factory=utcnow)


@dataclass
class OfflineSubmission:
    """A submission that may not exist on the server yet."""
    local_id: str
    questionnaire_id: int
    institution_id: int
    status: str = SubmissionStatus.DRAFT
    answers: Dict[str, Any] = field(default_factory=dict)
    synced: bool = False
    id: Optional[int] = None  # Server id, assigned once at first successful sync
    synced_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    modified_questions: List[str] = field(default_factory=list)


@dataclass
class OfflineFile:
    """A file attachment waiting for upload; ``blob`` is dropped once uploaded."""
    id: str
    submission_local_id: str
    question_name: str
    file_name: str
    file_type: str
    file_size: int
    blob: Optional[bytes] = None
    synced: bool = False
    uploaded_path: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncQueueItem:
    """A unit of pending upload work."""
    item_type: str  # "submission" | "file"
    item_id: str    # OfflineSubmission.local_id or OfflineFile.id
    priority: int = SyncPriority.NORMAL
    attempts: int = 0
    id: Optional[int] = None  # Auto-assigned by the store
    last_attempt_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


ENTITY_CLASSES = {
    EntityType.QUESTIONNAIRES: CachedQuestionnaire,
    EntityType.SUBMISSIONS: OfflineSubmission,
    EntityType.FILES: OfflineFile,
    EntityType.SYNC_QUEUE: SyncQueueItem,
}

PRIMARY_KEYS = {
    EntityType.QUESTIONNAIRES: "id",
    EntityType.SUBMISSIONS: "local_id",
    EntityType.FILES: "id",
    EntityType.SYNC_QUEUE: "id",
}

UNIQUE_KEYS = {
    EntityType.QUESTIONNAIRES: ("code", "version"),
    EntityType.SYNC_QUEUE: ("item_type", "item_id"),
}
