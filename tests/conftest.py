import json
import time
from typing import Dict, List, Optional

import httpx
import jwt
import pytest

from osgen.config import Settings
from osgen.credentials import StaticTokenProvider
from osgen.orchestrator import WorkflowOrchestrator
from osgen.outsystems_client import APPLICATIONS_PATH, JOBS_PATH, PUBLICATIONS_PATH


def make_token(exp: Optional[float] = None, **claims) -> str:
    """Build an HS256 JWT; ``exp`` defaults to one hour from now."""
    payload = dict(claims)
    payload["exp"] = int(exp if exp is not None else time.time() + 3600)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


class FakeOutSystems:
    """Scripted stand-in for the remote API, served through ``httpx.MockTransport``.

    Job and publication polls pop scripted bodies in order; once a script is
    exhausted the ``*_default`` body is served forever.
    """

    def __init__(self):
        self.create_job_response: Dict = {"key": "job-1", "status": "Queued"}
        self.job_script: List[Dict] = [
            {"key": "job-1", "status": "Queued"},
            {"key": "job-1", "status": "Queued"},
            {"key": "job-1", "status": "ReadyToGenerate"},
            {"key": "job-1", "status": "Processing"},
            {"key": "job-1", "status": "Done", "appSpec": {"appKey": "app-1"}},
        ]
        self.job_default: Dict = {"key": "job-1", "status": "Queued"}
        self.trigger_status = 202
        self.create_publication_response: Dict = {"key": "pub-1", "status": "Started"}
        self.publication_script: List[Dict] = [
            {"key": "pub-1", "status": "Running"},
            {"key": "pub-1", "status": "Finished"},
        ]
        self.publication_default: Dict = {"key": "pub-1", "status": "Running"}
        self.application_response: Dict = {"key": "app-1", "name": "Todo", "urlPath": "/app1"}
        self.fail_paths: Dict[str, int] = {}
        self.requests: List[httpx.Request] = []

    @property
    def calls(self) -> List[tuple]:
        return [(r.method, r.url.path) for r in self.requests]

    def count(self, method: str, prefix: str) -> int:
        return sum(1 for m, p in self.calls if m == method and p.startswith(prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], text="upstream said no")

        if method == "POST" and path == JOBS_PATH:
            return httpx.Response(200, json=self.create_job_response)
        if method == "POST" and path.startswith(JOBS_PATH + "/") and path.endswith("/generation"):
            return httpx.Response(self.trigger_status)
        if method == "GET" and path.startswith(JOBS_PATH + "/"):
            body = self.job_script.pop(0) if self.job_script else self.job_default
            return httpx.Response(200, json=body)
        if method == "POST" and path == PUBLICATIONS_PATH:
            return httpx.Response(200, json=self.create_publication_response)
        if method == "GET" and path.startswith(PUBLICATIONS_PATH + "/"):
            body = self.publication_script.pop(0) if self.publication_script else self.publication_default
            return httpx.Response(200, json=body)
        if method == "GET" and path.startswith(APPLICATIONS_PATH + "/"):
            return httpx.Response(200, json=self.application_response)
        return httpx.Response(404, text="no route")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def json_bodies(self, method: str, path: str) -> List[Dict]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path == path
        ]


class CountingProvider:
    """Credential provider that records how often it was asked for a token."""

    def __init__(self, token: Optional[str] = None):
        self.token = token or make_token()
        self.calls = 0

    async def authenticate(self, hostname: str, username: str, password: str) -> str:
        self.calls += 1
        return self.token


@pytest.fixture
def fake_remote():
    return FakeOutSystems()


@pytest.fixture
def settings():
    return Settings(
        hostname="env.outsystems.dev",
        static_token="unused",
        ready_poll_interval=0,
        build_poll_interval=0,
        publish_poll_interval=0,
    )


@pytest.fixture
def make_orchestrator(fake_remote, settings):
    def _make(provider=None, **overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        return WorkflowOrchestrator.from_settings(
            cfg,
            provider=provider or StaticTokenProvider(make_token()),
            transport=fake_remote.transport(),
        )
    return _make
