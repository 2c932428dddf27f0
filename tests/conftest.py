"""Shared fixtures: a recording stand-in for the remote API behind httpx.MockTransport."""

import json
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from core.config import ClientConfig
from core.errors import TracingError
from tracing.tracer import Tracer

BASE_URL = "https://tracing.test/api"


@dataclass
class RecordedRequest:
    method: str
    path: str
    body: Any
    params: dict[str, str]
    headers: dict[str, str]


@dataclass
class FakeTracingServer:
    """Records every request; answers 204 for writes and canned JSON for reads."""
    requests: list[RecordedRequest] = field(default_factory=list)
    failures: list[tuple[str, str, int]] = field(default_factory=list)
    responses: dict[tuple[str, str], Any] = field(default_factory=dict)

    def fail(self, method: str, path_suffix: str, status: int = 500) -> None:
        self.failures.append((method, path_suffix, status))

    def heal(self) -> None:
        self.failures.clear()

    def respond(self, method: str, path_suffix: str, data: Any) -> None:
        self.responses[(method, path_suffix)] = data

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append(RecordedRequest(
            method=request.method,
            path=path,
            body=body,
            params=dict(request.url.params),
            headers=dict(request.headers),
        ))
        for method, suffix, status in self.failures:
            if request.method == method and path.endswith(suffix):
                return httpx.Response(status, json={"errors": [f"{status} from fake server"]})
        for (method, suffix), data in self.responses.items():
            if request.method == method and path.endswith(suffix):
                return httpx.Response(200, json=data)
        if request.method == "GET":
            return httpx.Response(404, json={"errors": ["not found"]})
        return httpx.Response(204)

    def calls(self, method: str, path_suffix: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method and r.path.endswith(path_suffix)]

    # shortcuts for the bulk endpoints
    @property
    def trace_creates(self) -> list[RecordedRequest]:
        return self.calls("POST", "/v1/private/traces/batch")

    @property
    def trace_updates(self) -> list[RecordedRequest]:
        return self.calls("PATCH", "/v1/private/traces/batch")

    @property
    def span_creates(self) -> list[RecordedRequest]:
        return self.calls("POST", "/v1/private/spans/batch")

    @property
    def span_updates(self) -> list[RecordedRequest]:
        return self.calls("PATCH", "/v1/private/spans/batch")


@pytest.fixture
def server() -> FakeTracingServer:
    return FakeTracingServer()


@pytest.fixture
def config(server) -> ClientConfig:
    return ClientConfig(
        api_key="test-key",
        workspace="test-workspace",
        project_name="test-project",
        base_url=BASE_URL,
        transport=httpx.MockTransport(server.handler),
    )


@pytest.fixture
def tracer(config):
    t = Tracer(config)
    yield t
    try:
        t.close()
    except TracingError:
        # tests that leave failing requests pending
        pass


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for var in (
        "OPIK_API_KEY",
        "OPIK_WORKSPACE",
        "OPIK_PROJECT_NAME",
        "OPIK_URL_OVERRIDE",
        "OPIK_TIMEOUT",
        "OPIK_FLUSH_INTERVAL",
    ):
        monkeypatch.delenv(var, raising=False)
