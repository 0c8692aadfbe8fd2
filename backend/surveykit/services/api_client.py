"""
Survey server API client.
Thin async wrapper over the server's JSON/multipart endpoints used by the
connection probe, the sync engine and the questionnaire cache.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ..core.config import settings
from ..core.exceptions import ApiError

logger = logging.getLogger(__name__)


def _error_detail(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(payload, dict) and "detail" in payload:
        return str(payload["detail"])
    return str(payload)


class SurveyApiClient:
    """HTTP client for the survey server API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.token = token if token is not None else settings.API_TOKEN
        self.timeout = timeout or settings.SYNC_REQUEST_TIMEOUT
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Cheap reachability check; raises on network errors, False on non-2xx."""
        resp = await self._client.get(
            "/ping",
            headers={"Cache-Control": "no-store"},
            timeout=settings.PING_TIMEOUT_SECONDS,
        )
        return resp.is_success

    async def get_questionnaire(self, questionnaire_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/questionnaires/{questionnaire_id}")

    async def get_submission(self, submission_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/submissions/{submission_id}")

    async def create_submission(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/submissions", json=payload)

    async def update_submission(self, submission_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"/submissions/{submission_id}", json=payload)

    async def upload_file(
        self,
        *,
        submission_local_id: str,
        question_name: str,
        file_name: str,
        file_type: str,
        content: bytes,
        submission_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Multipart upload of one attachment; returns ``{"path": ..., "url": ...}``."""
        data = {"submission_local_id": submission_local_id, "question_name": question_name}
        if submission_id is not None:
            data["submission_id"] = str(submission_id)
        files = {"file": (file_name, content, file_type)}
        return await self._request("POST", "/submissions/files/upload", data=data, files=files)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ApiError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc

        if resp.is_error:
            detail = _error_detail(resp)
            logger.debug("%s %s -> %s: %s", method, path, resp.status_code, detail)
            raise ApiError(f"Server responded {resp.status_code}: {detail}", status_code=resp.status_code)
        return resp.json()
