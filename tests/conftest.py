from __future__ import annotations

import json
import re
from datetime import date
from pathlib import Path
from typing import Any

import httpx
import pytest

from fieldsync.core.config import Settings

TODAY = date(2026, 10, 19)

_JOB_PATH = re.compile(r"^/api/jobs/(?P<job_id>[^/]+)$")
_PHOTOS_PATH = re.compile(r"^/api/jobs/(?P<job_id>[^/]+)/photos$")


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "state_root": tmp_path / "state",
        "app_base_url": "http://fieldsync.test",
        "sync_interval_seconds": 3600,
        "probe_interval_seconds": 3600,
        "startup_sync_delay_seconds": 3600,
        "precache_retry_delay_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


def job_document(job_id: str, **overrides: Any) -> dict[str, Any]:
    document: dict[str, Any] = {
        "id": job_id,
        "jobNumber": f"JOB-{job_id}",
        "description": "Replace forklift battery",
        "status": "scheduled",
        "serviceType": "maintenance",
        "dueDate": f"{TODAY.isoformat()}T00:00:00.000Z",
        "notes": "server notes",
        "assignedToId": "tech-1",
        "customer": {"id": "cust-1", "name": "Acme Logistics", "city": "Reno"},
        "location": None,
        "contact": {"id": "contact-1", "firstName": "Dana", "lastName": "Reyes"},
        "assignedTo": {"id": "tech-1", "name": "Sam Tech"},
        "photos": [],
    }
    document.update(overrides)
    return document


class FakeJobsServer:
    """In-memory stand-in for the remote job API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.reachable = True
        self.unauthorized = False
        self.probe_status = 200
        self.failures: dict[str, list[int]] = {}
        self.jobs: list[dict[str, Any]] = []
        self.pages: dict[str, str] = {}
        self.broken_jobs: set[str] = set()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def fail_job(self, job_id: str, *statuses: int) -> None:
        self.failures.setdefault(job_id, []).extend(statuses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if request.method == "HEAD":
            return httpx.Response(self.probe_status)
        if self.unauthorized:
            return httpx.Response(401, json={"error": "Unauthorized"})

        match = _JOB_PATH.match(path)
        if match and request.method == "PUT":
            job_id = match.group("job_id")
            if job_id in self.broken_jobs:
                raise RuntimeError(f"handler crashed for {job_id}")
            pending_failures = self.failures.get(job_id)
            if pending_failures:
                return httpx.Response(pending_failures.pop(0), json={"error": "boom"})
            return httpx.Response(200, json={"id": job_id, **json.loads(request.content)})

        match = _PHOTOS_PATH.match(path)
        if match and request.method == "POST":
            job_id = match.group("job_id")
            if job_id in self.broken_jobs:
                raise RuntimeError(f"handler crashed for {job_id}")
            pending_failures = self.failures.get(job_id)
            if pending_failures:
                return httpx.Response(pending_failures.pop(0), json={"error": "boom"})
            return httpx.Response(201, json={"id": "photo-new", "url": f"/uploads/{job_id}.jpg"})
        if match and request.method == "DELETE":
            return httpx.Response(200, json={"success": True})

        if path == "/api/jobs" and request.method == "GET":
            return httpx.Response(200, json={"jobs": self.jobs, "total": len(self.jobs)})

        if path in self.pages:
            return httpx.Response(200, text=self.pages[path], headers={"content-type": "text/html; charset=utf-8"})

        return httpx.Response(404, json={"error": "not found"})

    def sent(self, method: str, prefix: str = "") -> list[httpx.Request]:
        return [req for req in self.requests if req.method == method and req.url.path.startswith(prefix)]

    def put_bodies(self) -> list[tuple[str, dict[str, Any]]]:
        return [
            (req.url.path.rsplit("/", 1)[-1], json.loads(req.content))
            for req in self.requests
            if req.method == "PUT"
        ]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def server() -> FakeJobsServer:
    return FakeJobsServer()
