"""
Trace and span entities.

A Trace is one logical unit of work; Spans are its sub-steps and form trees:
  trace: agent_run
  ├── span: plan              (general)
  │   └── span: llm_call      (llm, model + provider + usage)
  └── span: search_tool       (tool)

trace_id groups all spans of one trace; parent_span_id links a child to its
parent span (None = root span of the trace).

Entities are created by the Tracer and closed exactly once through end().
Everything set at close time is applied under the entity's own lock, so two
callers racing on end() see exactly one winner.
"""
import os
import threading
import time
import traceback as tb
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from core.errors import AlreadyEndedError, EntityNotFoundError, InvalidEndTimeError
from tracing.optional import UNSET, TriState

if TYPE_CHECKING:
    from tracing.tracer import Tracer


class SpanType(str, Enum):
    GENERAL = "general"
    LLM = "llm"
    TOOL = "tool"
    GUARDRAIL = "guardrail"


class EntityStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """UUID version 7: 48-bit unix milliseconds followed by random bits."""
    ms = time.time_ns() // 1_000_000
    value = (ms & 0xFFFF_FFFF_FFFF) << 80 | int.from_bytes(os.urandom(10), "big")
    value = (value & ~(0xF << 76)) | (0x7 << 76)   # version
    value = (value & ~(0x3 << 62)) | (0x2 << 62)   # RFC 4122 variant
    return str(uuid.UUID(int=value))


def ensure_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass
class ErrorInfo:
    """Failure details attached to a trace or span."""
    exception_type: str
    message: str = ""
    traceback: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(
            exception_type=type(exc).__name__,
            message=str(exc),
            traceback="".join(tb.format_exception(type(exc), exc, exc.__traceback__)),
        )


@dataclass
class _Entity:
    """Fields and close logic shared by traces and spans."""
    name: str
    project_name: str
    workspace: str
    id: str = field(default_factory=new_id)
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    status: EntityStatus = EntityStatus.OPEN

    # Payload: tri-state so "not given", "cleared" and "value" stay distinct
    input: TriState = field(default_factory=TriState)
    output: TriState = field(default_factory=TriState)
    metadata: TriState = field(default_factory=TriState)
    usage: TriState = field(default_factory=TriState)
    error_info: TriState = field(default_factory=TriState)
    tags: list[str] = field(default_factory=list)

    _tracer: "Tracer | None" = field(default=None, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    kind = "entity"

    def __post_init__(self):
        self.start_time = ensure_utc(self.start_time)

    @property
    def is_open(self) -> bool:
        return self.status is EntityStatus.OPEN

    @property
    def ended(self) -> bool:
        return self.status is EntityStatus.CLOSED

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def _require_tracer(self) -> "Tracer":
        if self._tracer is None:
            raise EntityNotFoundError(self.kind, self.id)
        return self._tracer

    def _close(self, end_time: datetime | None, updates: dict[str, Any]) -> None:
        """
        open → closed. Raises AlreadyEndedError or InvalidEndTimeError and
        leaves the entity untouched when the transition is not allowed.
        """
        with self._lock:
            if self.status is EntityStatus.CLOSED:
                raise AlreadyEndedError(self.kind, self.id)

            if end_time is None:
                end_time = max(utcnow(), self.start_time)
            else:
                end_time = ensure_utc(end_time)
                if end_time < self.start_time:
                    raise InvalidEndTimeError(
                        f"{self.kind} '{self.id}': end time {end_time.isoformat()} "
                        f"is before start time {self.start_time.isoformat()}"
                    )

            # convert everything first so a rejected value leaves no partial update
            changes: dict[str, Any] = {}
            for name, arg in updates.items():
                if arg is UNSET:
                    continue
                if name == "tags":
                    changes[name] = list(arg or [])
                elif isinstance(getattr(self, name), TriState):
                    changes[name] = TriState.from_arg(arg)
                else:
                    changes[name] = arg

            for name, value in changes.items():
                setattr(self, name, value)
            self.end_time = end_time
            self.status = EntityStatus.CLOSED


@dataclass
class Trace(_Entity):
    """Top-level record of one logical unit of work."""
    thread_id: str | None = None

    kind = "trace"

    def end(
        self,
        end_time: datetime | None = None,
        *,
        output: Any = UNSET,
        input: Any = UNSET,
        metadata: Any = UNSET,
        usage: Any = UNSET,
        error_info: Any = UNSET,
        tags: list[str] | Any = UNSET,
    ) -> None:
        """Close the trace and enqueue its update. Open spans are not touched."""
        self._require_tracer().end_trace(
            self, end_time,
            output=output, input=input, metadata=metadata,
            usage=usage, error_info=error_info, tags=tags,
        )

    def span(self, name: str, **options: Any) -> "Span":
        """Create a root span of this trace."""
        return self._require_tracer().create_span(self.id, name, **options)


@dataclass
class Span(_Entity):
    """Sub-step of a trace, optionally nested under a parent span."""
    trace_id: str = ""
    parent_span_id: str | None = None
    type: str = SpanType.GENERAL.value

    # LLM-specific fields (meaningful for llm spans)
    model: str | None = None
    provider: str | None = None

    kind = "span"

    def __post_init__(self):
        super().__post_init__()
        if not self.trace_id:
            raise ValueError("span requires a trace_id")
        if isinstance(self.type, SpanType):
            self.type = self.type.value

    def end(
        self,
        end_time: datetime | None = None,
        *,
        output: Any = UNSET,
        input: Any = UNSET,
        metadata: Any = UNSET,
        usage: Any = UNSET,
        error_info: Any = UNSET,
        tags: list[str] | Any = UNSET,
        model: str | Any = UNSET,
        provider: str | Any = UNSET,
    ) -> None:
        """Close the span and enqueue its update. The trace stays open."""
        self._require_tracer().end_span(
            self, end_time,
            output=output, input=input, metadata=metadata,
            usage=usage, error_info=error_info, tags=tags,
            model=model, provider=provider,
        )

    def span(self, name: str, **options: Any) -> "Span":
        """Create a child span nested under this one."""
        return self._require_tracer().create_span(
            self.trace_id, name, parent_span_id=self.id, **options
        )
