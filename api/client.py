"""
Remote tracing API client.

Thin httpx wrapper around the bulk write endpoints used by the batch layer and
the read-side queries used for verification and by the CLI:
- bulk trace / span create and update
- get trace / span by id
- list traces and spans of a project (page number + page size)
"""
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from core.config import ClientConfig
from core.errors import EntityNotFoundError, TransportError

logger = logging.getLogger(__name__)

WORKSPACE_HEADER = "Comet-Workspace"


@dataclass
class Page:
    """One page of a list query."""
    content: list[dict[str, Any]] = field(default_factory=list)
    page: int = 1
    size: int = 0
    total: int = 0

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "Page":
        content = data.get("content") or []
        return cls(
            content=list(content),
            page=int(data.get("page") or 1),
            size=int(data.get("size") or len(content)),
            total=int(data.get("total") or len(content)),
        )


class ApiClient:
    """Synchronous client for the remote tracing API."""

    def __init__(self, config: ClientConfig):
        self.config = config.validate()
        self._http = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            headers={
                "authorization": config.api_key,
                WORKSPACE_HEADER: config.workspace,
                "Accept": "application/json",
            },
            timeout=config.timeout,
            transport=config.transport,
        )

    # ── plumbing ───────────────────────────────────────────────────
    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._http.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            logger.debug(f"{method} {path} -> {response.status_code}: {response.text[:500]}")
            raise TransportError(
                f"{method} {path} rejected",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    def _get_entity(self, kind: str, path: str, entity_id: str) -> dict[str, Any]:
        try:
            return self._request("GET", path).json()
        except TransportError as e:
            if e.status_code == 404:
                raise EntityNotFoundError(kind, entity_id) from e
            raise

    # ── bulk writes ────────────────────────────────────────────────
    def create_traces(self, records: list[dict[str, Any]]) -> None:
        self._request("POST", "/v1/private/traces/batch", json={"traces": records})

    def update_traces(self, ids: list[str], update: dict[str, Any]) -> None:
        self._request("PATCH", "/v1/private/traces/batch", json={"ids": ids, "update": update})

    def create_spans(self, records: list[dict[str, Any]]) -> None:
        self._request("POST", "/v1/private/spans/batch", json={"spans": records})

    def update_spans(self, ids: list[str], update: dict[str, Any]) -> None:
        self._request("PATCH", "/v1/private/spans/batch", json={"ids": ids, "update": update})

    # ── read side ──────────────────────────────────────────────────
    def get_trace(self, trace_id: str) -> dict[str, Any]:
        return self._get_entity("trace", f"/v1/private/traces/{trace_id}", trace_id)

    def get_span(self, span_id: str) -> dict[str, Any]:
        return self._get_entity("span", f"/v1/private/spans/{span_id}", span_id)

    def list_traces(
        self,
        project_name: str | None = None,
        page: int = 1,
        size: int = 10,
    ) -> Page:
        params = {
            "project_name": project_name or self.config.project_name,
            "page": page,
            "size": size,
        }
        return Page.from_wire(self._request("GET", "/v1/private/traces", params=params).json())

    def list_spans(
        self,
        project_name: str | None = None,
        trace_id: str | None = None,
        page: int = 1,
        size: int = 100,
    ) -> Page:
        params: dict[str, Any] = {
            "project_name": project_name or self.config.project_name,
            "page": page,
            "size": size,
        }
        if trace_id:
            params["trace_id"] = trace_id
        return Page.from_wire(self._request("GET", "/v1/private/spans", params=params).json())

    def ping(self) -> bool:
        """Connectivity check. Raises TransportError when unreachable."""
        self._request("GET", "/is-alive/ping")
        return True

    # ── lifecycle ──────────────────────────────────────────────────
    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
