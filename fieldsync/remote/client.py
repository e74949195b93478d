"""
HTTP client for the remote job-management API.

Maps transport failures to ``NetworkError``, 401 responses to ``AuthError``
and any other non-2xx status to ``RemoteRequestError``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx
from pydantic import ValidationError as SchemaValidationError

from fieldsync.core.config import Settings
from fieldsync.core.errors import AuthError, NetworkError, RemoteRequestError, ValidationError
from fieldsync.edits.types import QueuedPhotoUpload
from fieldsync.remote.schemas import RemoteJob, RemoteJobList

logger = logging.getLogger(__name__)

_TITLE_PATTERN = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True, slots=True)
class FetchedPage:
    route: str
    body: bytes
    content_type: str
    title: str


class JobsApiClient:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        headers = {"Accept": "application/json"}
        if settings.auth_token is not None:
            headers["Authorization"] = f"Bearer {settings.auth_token.get_secret_value()}"
        self._client = httpx.AsyncClient(
            base_url=settings.app_base_url,
            timeout=settings.http_timeout_seconds,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "JobsApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _api_path(self, path: str) -> str:
        return f"{self._settings.api_prefix}{path}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

        if response.status_code == 401:
            raise AuthError("Authentication failed")
        if response.is_error:
            raise RemoteRequestError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    async def put_job(self, job_id: str, fields: dict[str, Any], *, timestamp_ms: int) -> dict[str, Any]:
        body = {**fields, "offlineUpdate": True, "timestamp": timestamp_ms}
        response = await self._request("PUT", self._api_path(f"/jobs/{job_id}"), json=body)
        return self._json_body(response)

    async def upload_photo(self, upload: QueuedPhotoUpload) -> dict[str, Any]:
        response = await self._request(
            "POST",
            self._api_path(f"/jobs/{upload.job_id}/photos"),
            files={"file": (upload.file_name, upload.file_data, upload.content_type)},
            data={
                "jobId": upload.job_id,
                "caption": upload.caption or "",
                "isPrimary": "true" if upload.is_primary else "false",
            },
        )
        return self._json_body(response)

    async def delete_photo(self, job_id: str, photo_id: str) -> None:
        await self._request("DELETE", self._api_path(f"/jobs/{job_id}/photos"), params={"photoId": photo_id})

    async def list_jobs(self, technician_id: str, due_date: date, *, limit: int | None = None) -> list[RemoteJob]:
        response = await self._request(
            "GET",
            self._api_path("/jobs"),
            params={
                "assignedToId": technician_id,
                "dueDate": due_date.isoformat(),
                "limit": limit or self._settings.job_fetch_limit,
            },
        )
        try:
            payload = RemoteJobList.model_validate(self._json_body(response))
        except SchemaValidationError as exc:
            raise ValidationError(f"Malformed job list from server: {exc.error_count()} errors") from exc
        return payload.jobs

    async def fetch_page(self, route: str) -> FetchedPage:
        response = await self._request("GET", route, headers={"Accept": "text/html"})
        content_type = response.headers.get("content-type", "text/html")
        match = _TITLE_PATTERN.search(response.text) if "html" in content_type else None
        title = " ".join(match.group(1).split()) if match else ""
        return FetchedPage(route=route, body=response.content, content_type=content_type, title=title)

    async def probe(self) -> bool:
        """HEAD the probe path. 2xx or 401 means the server is reachable."""
        try:
            response = await self._client.head(
                self._settings.probe_path,
                timeout=self._settings.probe_timeout_seconds,
                headers={"Cache-Control": "no-cache"},
            )
        except httpx.HTTPError as exc:
            logger.debug("Reachability probe failed: %s", exc)
            return False
        return response.is_success or response.status_code == 401
