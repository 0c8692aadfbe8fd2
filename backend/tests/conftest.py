"""
SurveyKit - Test configuration and fixtures
"""
import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from surveykit.api.submissions import get_file_storage
from surveykit.core.exceptions import ApiError
from surveykit.main import app
from surveykit.models.base import Base, get_db
from surveykit.models.questionnaire import Questionnaire, QuestionPermission
from surveykit.services.api_client import SurveyApiClient
from surveykit.services.connection_monitor import ConnectionMonitor, NativeConnectivity
from surveykit.services.file_storage import FileStorageService
from surveykit.services.local_store import InMemoryLocalStore, SqlLocalStore
from surveykit.services.offline_submission import CurrentUser

SURVEY_JSON = {
    "pages": [
        {
            "name": "p1",
            "elements": [
                {"type": "text", "name": "q1"},
                {"type": "text", "name": "q2"},
                {"type": "file", "name": "photo"},
            ],
        }
    ]
}


class Reachability:
    """Controllable connectivity probe."""

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.reachable


class LinkTransport(httpx.AsyncBaseTransport):
    """ASGI transport to the app that refuses connections while ``native`` is offline."""

    def __init__(self, app, native: NativeConnectivity):
        self._inner = httpx.ASGITransport(app=app)
        self.native = native

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.native.online:
            raise httpx.ConnectError("Network is unreachable", request=request)
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()


class FakeApi:
    """In-process stand-in for ``SurveyApiClient`` recording every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.server: Dict[int, Dict[str, Any]] = {}
        self.uploads: List[Dict[str, Any]] = []
        self.fail_all = False
        self.fail_local_ids = set()
        self.fail_uploads = False
        self._next_id = 100

    async def _check(self, local_id: Optional[str] = None) -> None:
        # Yield like real network I/O would
        await asyncio.sleep(0)
        if self.fail_all or (local_id is not None and local_id in self.fail_local_ids):
            raise ApiError("Server responded 503: unavailable", status_code=503)

    async def ping(self) -> bool:
        return not self.fail_all

    async def create_submission(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create", payload["local_id"]))
        await self._check(payload["local_id"])
        self._next_id += 1
        record = dict(payload, id=self._next_id, updated_at="2000-01-01T00:00:00Z")
        self.server[self._next_id] = record
        return record

    async def update_submission(self, submission_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update", payload["local_id"]))
        await self._check(payload["local_id"])
        record = dict(self.server.get(submission_id, {}), **payload, id=submission_id)
        self.server[submission_id] = record
        return record

    async def get_submission(self, submission_id: int) -> Dict[str, Any]:
        await self._check()
        if submission_id not in self.server:
            raise ApiError("Server responded 404: Submission not found", status_code=404)
        return self.server[submission_id]

    async def upload_file(self, **kwargs) -> Dict[str, Any]:
        self.calls.append(("upload", kwargs["file_name"]))
        await asyncio.sleep(0)
        if self.fail_all or self.fail_uploads:
            raise ApiError("Server responded 503: unavailable", status_code=503)
        self.uploads.append(kwargs)
        path = f"{kwargs['submission_local_id']}/{kwargs['file_name']}"
        return {"path": path, "url": f"/files/{path}"}


@pytest.fixture
def memory_store():
    return InMemoryLocalStore()


@pytest.fixture
async def sql_store(tmp_path):
    store = SqlLocalStore(f"sqlite+aiosqlite:///{tmp_path / 'offline.db'}")
    await store.open()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Run a test against both local store backends."""
    if request.param == "memory":
        backend = InMemoryLocalStore()
    else:
        backend = SqlLocalStore(f"sqlite+aiosqlite:///{tmp_path / 'offline.db'}")
    await backend.open()
    yield backend
    await backend.close()


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def probe():
    return Reachability(reachable=False)


@pytest.fixture
def native():
    return NativeConnectivity(online=False)


@pytest.fixture
async def monitor(probe, native):
    """Offline monitor without a periodic timer."""
    mon = ConnectionMonitor(probe=probe, native=native, interval=0, timeout=1)
    await mon.start()
    yield mon
    await mon.stop()


@pytest.fixture
def user():
    return CurrentUser(id=7, institution_id=3)


# ── Server side ──────────────────────────────────────────────────────────────

@pytest.fixture
def server_db():
    """Isolated in-memory server database shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield TestSession
    engine.dispose()


@pytest.fixture
def questionnaire(server_db):
    db = server_db()
    try:
        q = Questionnaire(code="HS", version=1, title="Health survey", surveyjs_json=SURVEY_JSON)
        q.permissions.append(QuestionPermission(question_name="q1", institution_id=3, permission="edit"))
        db.add(q)
        db.commit()
        db.refresh(q)
        return q.id
    finally:
        db.close()


@pytest.fixture
def upload_storage(tmp_path):
    return FileStorageService(base_dir=str(tmp_path / "uploads"))


@pytest.fixture
def server_app(server_db, upload_storage):
    def override_get_db():
        db = server_db()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_storage] = lambda: upload_storage
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(server_app):
    return TestClient(server_app)


@pytest.fixture
async def api_client(server_app):
    """Real API client talking to the app in-process."""
    api = SurveyApiClient(
        base_url="http://test/api/v1",
        transport=httpx.ASGITransport(app=server_app),
    )
    yield api
    await api.close()
