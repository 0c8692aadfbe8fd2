"""
Questionnaire cache.
Keeps questionnaire definitions (schema and field permissions) in the local
store so forms can be rendered without a connection.
"""
import logging
from typing import Any, Dict, List, Optional

from ..models.offline import CachedQuestionnaire, EntityType, utcnow
from .local_store import LocalStore

logger = logging.getLogger(__name__)


class QuestionnaireCache:
    def __init__(self, store: LocalStore, api=None):
        self.store = store
        self.api = api

    async def cache(self, questionnaire_id: int, refresh: bool = False) -> CachedQuestionnaire:
        """Return the cached definition, fetching it from the server when missing.

        Cached entries are never mutated; ``refresh=True`` replaces the entry
        with a fresh copy from the server.
        """
        if not refresh:
            cached = await self.get(questionnaire_id)
            if cached is not None:
                return cached
        if self.api is None:
            raise RuntimeError("No API client configured to fetch questionnaires")
        data = await self.api.get_questionnaire(questionnaire_id)
        return await self.cache_definition(data)

    async def cache_definition(self, data: Dict[str, Any]) -> CachedQuestionnaire:
        """Store a questionnaire payload as returned by ``GET /questionnaires/{id}``."""
        record = CachedQuestionnaire(
            id=int(data["id"]),
            code=data["code"],
            version=int(data["version"]),
            title=data["title"],
            schema=data.get("surveyjs_json") or {},
            permissions=list(data.get("permissions") or []),
            cached_at=utcnow(),
        )
        record = await self.store.put(EntityType.QUESTIONNAIRES, record)
        logger.info("Cached questionnaire %s v%d (id %d)", record.code, record.version, record.id)
        return record

    async def get(self, questionnaire_id: int) -> Optional[CachedQuestionnaire]:
        return await self.store.get(EntityType.QUESTIONNAIRES, questionnaire_id)

    async def get_by_code(self, code: str, version: Optional[int] = None) -> Optional[CachedQuestionnaire]:
        """Exact version when given, otherwise the highest cached version."""
        where: Dict[str, Any] = {"code": code}
        if version is not None:
            where["version"] = version
        matches = await self.store.query(EntityType.QUESTIONNAIRES, where=where, order_by=("version",))
        return matches[-1] if matches else None

    async def list(self) -> List[CachedQuestionnaire]:
        return await self.store.query(EntityType.QUESTIONNAIRES, order_by=("code", "version"))

    async def clear(self) -> int:
        count = await self.store.count(EntityType.QUESTIONNAIRES)
        await self.store.clear(EntityType.QUESTIONNAIRES)
        logger.info("Cleared %d cached questionnaire(s)", count)
        return count
