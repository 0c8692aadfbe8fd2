"""
Per-question merge of offline edits with the latest server copy.

Questions the user modified locally always win; every other question takes the
server's value. A conflict is a locally modified question whose server value
also exists and differs.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..models.offline import OfflineSubmission

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    merged_answers: Dict[str, Any]
    conflicts: List[str] = field(default_factory=list)
    server_newer: bool = False


def parse_timestamp(value) -> datetime:
    """Parse a server timestamp into naive UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def detect_conflicts(local: OfflineSubmission, server_answers: Dict[str, Any]) -> List[str]:
    return [
        name for name in local.modified_questions
        if name in server_answers and server_answers[name] != local.answers.get(name)
    ]


def merge_answers(local: OfflineSubmission, server_answers: Dict[str, Any]) -> MergeResult:
    merged = dict(server_answers)
    for name in local.modified_questions:
        if name in local.answers:
            merged[name] = local.answers[name]
        else:
            merged.pop(name, None)
    return MergeResult(merged, detect_conflicts(local, server_answers), server_newer=True)


def conflict_summary(conflicts: List[str]) -> str:
    if not conflicts:
        return "No conflicts"
    if len(conflicts) == 1:
        return f"1 conflict resolved (question: {conflicts[0]})"
    return f"{len(conflicts)} conflicts resolved (questions: {', '.join(conflicts)})"


class MergeService:
    """Reconciles an already-synced submission's offline edits with the server."""

    def __init__(self, api):
        self.api = api

    async def merge_submission(self, local: OfflineSubmission, server_id: int) -> MergeResult:
        server = await self.api.get_submission(server_id)
        server_updated_at = parse_timestamp(server["updated_at"])
        local_synced_at = local.synced_at or local.created_at

        if server_updated_at <= local_synced_at:
            logger.debug("Server copy of submission %s unchanged, using local answers", server_id)
            return MergeResult(dict(local.answers))

        logger.info(
            "Server copy of submission %s is newer (server %s, local %s), merging",
            server_id, server_updated_at.isoformat(), local_synced_at.isoformat(),
        )
        result = merge_answers(local, server.get("answers_json") or {})
        if result.conflicts:
            logger.info("Submission %s: %s", server_id, conflict_summary(result.conflicts))
        return result
