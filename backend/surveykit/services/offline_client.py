"""
Offline client runtime.
Wires the local store, API client, connection monitor and sync engine together
for one running client, and hands out editing sessions.
"""
import logging
from typing import Any, Dict, Optional

from .api_client import SurveyApiClient
from .connection_monitor import ConnectionMonitor, NativeConnectivity
from .local_store import LocalStore, SqlLocalStore
from .offline_files import OfflineFileStorage
from .offline_submission import OfflineSubmissionManager, UserProvider, list_offline_submissions
from .offline_sync import SyncEngine
from .questionnaire_cache import QuestionnaireCache

logger = logging.getLogger(__name__)


class OfflineClient:
    """Owns every offline component; ``start()`` before use, ``close()`` after."""

    def __init__(
        self,
        user_provider: UserProvider,
        store: Optional[LocalStore] = None,
        api: Optional[SurveyApiClient] = None,
        native: Optional[NativeConnectivity] = None,
        monitor: Optional[ConnectionMonitor] = None,
        sync_interval: Optional[float] = None,
    ):
        self.user_provider = user_provider
        self.store = store or SqlLocalStore()
        self.api = api or SurveyApiClient()
        self.native = native or NativeConnectivity()
        self.monitor = monitor or ConnectionMonitor(probe=self.api.ping, native=self.native)
        self.engine = SyncEngine(self.store, self.api, monitor=self.monitor, sync_interval=sync_interval)
        self.files = OfflineFileStorage(self.store, on_queue_changed=self.engine.refresh_pending_count)
        self.questionnaires = QuestionnaireCache(self.store, self.api)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.store.open()
        await self.monitor.start()
        await self.engine.refresh_pending_count()
        self.engine.start()
        self._started = True
        logger.info("Offline client started (%s)", "online" if self.monitor.is_online else "offline")

    async def close(self) -> None:
        if self._started:
            await self.engine.stop()
            await self.monitor.stop()
        await self.api.close()
        await self.store.close()
        self._started = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def open_session(
        self,
        questionnaire_id: int,
        existing_submission_id: Optional[int] = None,
        initial_answers: Optional[Dict[str, Any]] = None,
    ) -> OfflineSubmissionManager:
        return OfflineSubmissionManager(
            questionnaire_id,
            self.store,
            self.monitor,
            self.user_provider,
            existing_submission_id=existing_submission_id,
            initial_answers=initial_answers,
            on_queue_changed=self.engine.refresh_pending_count,
        )

    async def sync(self):
        return await self.engine.sync()

    async def list_submissions(self) -> Dict[str, Any]:
        return await list_offline_submissions(self.store)
