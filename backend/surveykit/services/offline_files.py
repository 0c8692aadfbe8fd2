"""
Offline file attachments.
Keeps file blobs in the local store until the sync engine uploads them, within
a per-file limit and a total storage budget.
"""
import logging
import uuid
from typing import Dict, List, Optional

from ..core.config import settings
from ..core.exceptions import FileTooLarge, LocalStoreError, StorageQuotaExceeded
from ..models.offline import EntityType, OfflineFile, QueueItemType, SyncPriority, SyncQueueItem, utcnow
from .local_store import LocalStore, QueueListener, notify_queue_changed

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """Human readable size, e.g. ``1.5 MB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


class OfflineFileStorage:
    """Store, track and clean up file blobs waiting for upload."""

    def __init__(
        self,
        store: LocalStore,
        max_file_size: Optional[int] = None,
        max_total_storage: Optional[int] = None,
        on_queue_changed: Optional[QueueListener] = None,
    ):
        self.store = store
        self.on_queue_changed = on_queue_changed
        self.max_file_size = max_file_size or settings.MAX_FILE_SIZE_BYTES
        self.max_total_storage = max_total_storage or settings.MAX_TOTAL_STORAGE_BYTES

    async def store_file(
        self,
        submission_local_id: str,
        question_name: str,
        file_name: str,
        content: bytes,
        file_type: str = "application/octet-stream",
    ) -> OfflineFile:
        """Persist a file for a submission question and queue it for upload."""
        size = len(content)
        if size > self.max_file_size:
            raise FileTooLarge(
                f"File size ({format_bytes(size)}) exceeds maximum allowed size "
                f"({format_bytes(self.max_file_size)})"
            )
        await self._ensure_storage_available(size)

        now = utcnow()
        record = OfflineFile(
            id=str(uuid.uuid4()),
            submission_local_id=submission_local_id,
            question_name=question_name,
            file_name=file_name,
            file_type=file_type,
            file_size=size,
            blob=content,
            created_at=now,
        )
        record = await self.store.put(EntityType.FILES, record)
        try:
            await self.store.put(
                EntityType.SYNC_QUEUE,
                SyncQueueItem(
                    item_type=QueueItemType.FILE,
                    item_id=record.id,
                    priority=SyncPriority.LOW,
                    created_at=now,
                ),
            )
        except LocalStoreError:
            # Every stored blob has a queue entry
            await self.store.delete(EntityType.FILES, record.id)
            raise
        logger.info(
            "Stored file %s (%s) for submission %s",
            file_name, format_bytes(size), submission_local_id,
        )
        await notify_queue_changed(self.on_queue_changed)
        return record

    async def get_file(self, file_id: str) -> Optional[OfflineFile]:
        return await self.store.get(EntityType.FILES, file_id)

    async def get_files_by_submission(self, submission_local_id: str) -> List[OfflineFile]:
        return await self.store.query(
            EntityType.FILES,
            where={"submission_local_id": submission_local_id},
            order_by=("created_at",),
        )

    async def delete_file(self, file_id: str) -> None:
        """Remove a file and its pending upload entry."""
        for entry in await self.store.query(
            EntityType.SYNC_QUEUE, where={"item_type": QueueItemType.FILE, "item_id": file_id}
        ):
            await self.store.delete(EntityType.SYNC_QUEUE, entry.id)
        await self.store.delete(EntityType.FILES, file_id)
        logger.info("Deleted file %s", file_id)
        await notify_queue_changed(self.on_queue_changed)

    async def mark_as_synced(self, file_id: str, uploaded_path: str, remove_blob: bool = True) -> Optional[OfflineFile]:
        changes = {"synced": True, "uploaded_path": uploaded_path}
        if remove_blob:
            changes["blob"] = None
        return await self.store.update(EntityType.FILES, file_id, **changes)

    async def drop_blob(self, file_id: str) -> None:
        await self.store.update(EntityType.FILES, file_id, blob=None)

    async def has_pending_files(self, submission_local_id: str) -> bool:
        files = await self.get_files_by_submission(submission_local_id)
        return any(not f.synced and f.blob is not None for f in files)

    async def pending_files_count(self) -> int:
        files = await self.store.query(EntityType.FILES, where={"synced": False})
        return sum(1 for f in files if f.blob is not None)

    async def get_storage_stats(self) -> Dict:
        files = await self.store.query(EntityType.FILES)
        largest = max(files, key=lambda f: f.file_size) if files else None
        return {
            "used_bytes": sum(f.file_size for f in files if f.blob is not None),
            "file_count": len(files),
            "synced_count": sum(1 for f in files if f.synced),
            "pending_count": sum(1 for f in files if not f.synced),
            "largest_file": {"name": largest.file_name, "size": largest.file_size} if largest else None,
        }

    async def cleanup_synced_files(self) -> int:
        """Drop blobs of uploaded files, keeping their metadata."""
        cleaned = 0
        for record in await self.store.query(EntityType.FILES, where={"synced": True}):
            if record.blob is not None:
                await self.drop_blob(record.id)
                cleaned += 1
        logger.info("Cleaned up %d synced file(s)", cleaned)
        return cleaned

    async def _ensure_storage_available(self, required: int) -> None:
        stats = await self.get_storage_stats()
        if stats["used_bytes"] + required <= self.max_total_storage:
            return
        if await self.cleanup_synced_files():
            stats = await self.get_storage_stats()
            if stats["used_bytes"] + required <= self.max_total_storage:
                return
        raise StorageQuotaExceeded(
            f"Storage quota exceeded. Used: {format_bytes(stats['used_bytes'])}, "
            f"Required: {format_bytes(required)}, Maximum: {format_bytes(self.max_total_storage)}. "
            "Please sync and delete old submissions to free space."
        )
