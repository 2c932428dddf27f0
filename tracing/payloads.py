"""
Wire records for the bulk create / bulk update endpoints.

Tri-state fields go through tracing.optional, so an absent field never emits
a key and an explicit null is always the JSON literal null.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from tracing.models import Span, Trace
from tracing.optional import TriState, decode_from, encode_into

TRI_STATE_FIELDS = ("input", "output", "metadata", "usage", "error_info")


def format_time(ts: datetime) -> str:
    """ISO-8601 UTC with microseconds and a Z suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_time(raw: str | None) -> datetime | None:
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _encode_tri_state(payload: dict[str, Any], record: Any) -> None:
    for key in TRI_STATE_FIELDS:
        encode_into(payload, key, getattr(record, key))


def _decode_tri_state(payload: dict[str, Any]) -> dict[str, TriState]:
    return {key: decode_from(payload, key) for key in TRI_STATE_FIELDS}


def _changed_tri_state(entity: Trace | Span, changed: set[str]) -> dict[str, TriState]:
    return {
        key: getattr(entity, key).copy() if key in changed else TriState.absent()
        for key in TRI_STATE_FIELDS
    }


@dataclass
class TraceWrite:
    """One record of a bulk trace create."""
    id: str
    project_name: str
    name: str
    start_time: datetime
    end_time: datetime | None = None
    tags: list[str] = field(default_factory=list)
    thread_id: str | None = None
    input: TriState = field(default_factory=TriState)
    output: TriState = field(default_factory=TriState)
    metadata: TriState = field(default_factory=TriState)
    usage: TriState = field(default_factory=TriState)
    error_info: TriState = field(default_factory=TriState)

    @classmethod
    def from_trace(cls, trace: Trace) -> "TraceWrite":
        return cls(
            id=trace.id,
            project_name=trace.project_name,
            name=trace.name,
            start_time=trace.start_time,
            tags=list(trace.tags),
            thread_id=trace.thread_id,
            input=trace.input.copy(),
            metadata=trace.metadata.copy(),
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "project_name": self.project_name,
            "name": self.name,
            "start_time": format_time(self.start_time),
        }
        if self.end_time is not None:
            payload["end_time"] = format_time(self.end_time)
        if self.tags:
            payload["tags"] = list(self.tags)
        if self.thread_id:
            payload["thread_id"] = self.thread_id
        _encode_tri_state(payload, self)
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "TraceWrite":
        return cls(
            id=payload["id"],
            project_name=payload["project_name"],
            name=payload["name"],
            start_time=parse_time(payload["start_time"]),
            end_time=parse_time(payload.get("end_time")),
            tags=list(payload.get("tags") or []),
            thread_id=payload.get("thread_id"),
            **_decode_tri_state(payload),
        )


@dataclass
class TraceUpdate:
    """Partial update applied to every id of a bulk trace update."""
    project_name: str
    end_time: datetime | None = None
    tags: list[str] | None = None
    input: TriState = field(default_factory=TriState)
    output: TriState = field(default_factory=TriState)
    metadata: TriState = field(default_factory=TriState)
    usage: TriState = field(default_factory=TriState)
    error_info: TriState = field(default_factory=TriState)

    @classmethod
    def for_closed(cls, trace: Trace, changed: set[str]) -> "TraceUpdate":
        """end_time plus only the fields that were passed to end()."""
        return cls(
            project_name=trace.project_name,
            end_time=trace.end_time,
            tags=list(trace.tags) if "tags" in changed else None,
            **_changed_tri_state(trace, changed),
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"project_name": self.project_name}
        if self.end_time is not None:
            payload["end_time"] = format_time(self.end_time)
        if self.tags is not None:
            payload["tags"] = list(self.tags)
        _encode_tri_state(payload, self)
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "TraceUpdate":
        return cls(
            project_name=payload["project_name"],
            end_time=parse_time(payload.get("end_time")),
            tags=payload.get("tags"),
            **_decode_tri_state(payload),
        )


@dataclass
class SpanWrite:
    """One record of a bulk span create."""
    id: str
    project_name: str
    trace_id: str
    name: str
    type: str
    start_time: datetime
    parent_span_id: str | None = None
    end_time: datetime | None = None
    model: str | None = None
    provider: str | None = None
    tags: list[str] = field(default_factory=list)
    input: TriState = field(default_factory=TriState)
    output: TriState = field(default_factory=TriState)
    metadata: TriState = field(default_factory=TriState)
    usage: TriState = field(default_factory=TriState)
    error_info: TriState = field(default_factory=TriState)

    @classmethod
    def from_span(cls, span: Span) -> "SpanWrite":
        return cls(
            id=span.id,
            project_name=span.project_name,
            trace_id=span.trace_id,
            parent_span_id=span.parent_span_id,
            name=span.name,
            type=span.type,
            start_time=span.start_time,
            model=span.model,
            provider=span.provider,
            tags=list(span.tags),
            input=span.input.copy(),
            metadata=span.metadata.copy(),
            usage=span.usage.copy(),
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "project_name": self.project_name,
            "trace_id": self.trace_id,
            "name": self.name,
            "type": self.type,
            "start_time": format_time(self.start_time),
        }
        if self.parent_span_id:
            payload["parent_span_id"] = self.parent_span_id
        if self.end_time is not None:
            payload["end_time"] = format_time(self.end_time)
        if self.model:
            payload["model"] = self.model
        if self.provider:
            payload["provider"] = self.provider
        if self.tags:
            payload["tags"] = list(self.tags)
        _encode_tri_state(payload, self)
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "SpanWrite":
        return cls(
            id=payload["id"],
            project_name=payload["project_name"],
            trace_id=payload["trace_id"],
            name=payload["name"],
            type=payload["type"],
            start_time=parse_time(payload["start_time"]),
            parent_span_id=payload.get("parent_span_id"),
            end_time=parse_time(payload.get("end_time")),
            model=payload.get("model"),
            provider=payload.get("provider"),
            tags=list(payload.get("tags") or []),
            **_decode_tri_state(payload),
        )


@dataclass
class SpanUpdate:
    """Partial update applied to every id of a bulk span update."""
    project_name: str
    trace_id: str
    parent_span_id: str | None = None
    end_time: datetime | None = None
    model: str | None = None
    provider: str | None = None
    tags: list[str] | None = None
    input: TriState = field(default_factory=TriState)
    output: TriState = field(default_factory=TriState)
    metadata: TriState = field(default_factory=TriState)
    usage: TriState = field(default_factory=TriState)
    error_info: TriState = field(default_factory=TriState)

    @classmethod
    def for_closed(cls, span: Span, changed: set[str]) -> "SpanUpdate":
        """end_time plus only the fields that were passed to end()."""
        return cls(
            project_name=span.project_name,
            trace_id=span.trace_id,
            parent_span_id=span.parent_span_id,
            end_time=span.end_time,
            model=span.model if "model" in changed else None,
            provider=span.provider if "provider" in changed else None,
            tags=list(span.tags) if "tags" in changed else None,
            **_changed_tri_state(span, changed),
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "project_name": self.project_name,
            "trace_id": self.trace_id,
        }
        if self.parent_span_id:
            payload["parent_span_id"] = self.parent_span_id
        if self.end_time is not None:
            payload["end_time"] = format_time(self.end_time)
        if self.model:
            payload["model"] = self.model
        if self.provider:
            payload["provider"] = self.provider
        if self.tags is not None:
            payload["tags"] = list(self.tags)
        _encode_tri_state(payload, self)
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "SpanUpdate":
        return cls(
            project_name=payload["project_name"],
            trace_id=payload["trace_id"],
            parent_span_id=payload.get("parent_span_id"),
            end_time=parse_time(payload.get("end_time")),
            model=payload.get("model"),
            provider=payload.get("provider"),
            tags=payload.get("tags"),
            **_decode_tri_state(payload),
        )
