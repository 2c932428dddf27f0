"""
Tracer: owns the trace/span lifecycle and the outbound batch.

Usage patterns:

1. Explicit contexts (see tracing.context):
       ctx, trace = start_trace(None, tracer, "agent_run", input={...})
       ctx, span = start_span(ctx, "claude", type="llm", model="claude-sonnet")
       span.end(output={...}, usage={"prompt_tokens": 10})
       trace.end(output={...})
       tracer.flush()

2. Handles only:
       trace = tracer.create_trace("agent_run")
       span = trace.span("tool_call", type="tool")
       span.end(output={...})
       trace.end()

State machine per entity: open → closed, exactly once. Parent links are
fixed at creation; ending a parent never ends its children. Entities stay in
the local registry until their closing update has been submitted.
"""
import logging
import threading
from datetime import datetime
from typing import Any

from api.client import ApiClient
from core.config import ClientConfig
from core.errors import (
    AlreadyEndedError,
    EntityNotFoundError,
    InvalidReferenceError,
    TracerClosedError,
)
from tracing.batch import BatchWriter, OpKind, PendingOp
from tracing.models import Span, SpanType, Trace, utcnow
from tracing.optional import UNSET, TriState
from tracing.payloads import SpanUpdate, TraceUpdate

logger = logging.getLogger(__name__)


class Tracer:
    _instance: "Tracer | None" = None
    _lock = threading.Lock()

    def __init__(self, config: ClientConfig | None = None, api: ApiClient | None = None):
        self.config = (config or ClientConfig.from_env()).validate()
        self._owns_api = api is None
        self._api = api or ApiClient(self.config)

        # Registry of live entities, guarded so concurrent call chains can
        # create and end entities safely
        self._registry_lock = threading.Lock()
        self._traces: dict[str, Trace] = {}
        self._spans: dict[str, Span] = {}

        self._writer = BatchWriter(
            self._api,
            max_batch_size=self.config.max_batch_size,
            flush_interval=self.config.flush_interval,
            flush_batch_size=self.config.flush_batch_size,
            on_committed=self._on_committed,
        )
        self._writer.start()
        self._closed = False

    @classmethod
    def instance(cls) -> "Tracer":
        """Process-wide default tracer, configured from the environment."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Close and drop the default tracer (for testing)."""
        with cls._lock:
            instance, cls._instance = cls._instance, None
        if instance is not None:
            instance.close()

    # ── properties ─────────────────────────────────────────────────
    @property
    def api(self) -> ApiClient:
        return self._api

    @property
    def writer(self) -> BatchWriter:
        return self._writer

    @property
    def project_name(self) -> str:
        return self.config.project_name

    @property
    def pending_count(self) -> int:
        return self._writer.pending_count

    # ── creation ───────────────────────────────────────────────────
    def create_trace(
        self,
        name: str,
        *,
        start_time: datetime | None = None,
        input: Any = UNSET,
        metadata: Any = UNSET,
        tags: list[str] | None = None,
        thread_id: str | None = None,
        project_name: str | None = None,
    ) -> Trace:
        """Create a trace, register it and enqueue its create."""
        self._check_open()
        trace = Trace(
            name=name,
            project_name=project_name or self.config.project_name,
            workspace=self.config.workspace,
            start_time=start_time or utcnow(),
            input=TriState.from_arg(input),
            metadata=TriState.from_arg(metadata),
            tags=list(tags or []),
            thread_id=thread_id,
            _tracer=self,
        )
        self._writer.enqueue_create(trace)
        with self._registry_lock:
            self._traces[trace.id] = trace
        logger.debug(f"Started trace {trace.name!r} ({trace.id})")
        return trace

    def create_span(
        self,
        trace_id: str,
        name: str,
        *,
        parent_span_id: str | None = None,
        type: SpanType | str = SpanType.GENERAL,
        start_time: datetime | None = None,
        input: Any = UNSET,
        metadata: Any = UNSET,
        usage: Any = UNSET,
        model: str | None = None,
        provider: str | None = None,
        tags: list[str] | None = None,
    ) -> Span:
        """
        Create a span of a registered trace. parent_span_id, when given, must
        name a registered span of the same trace.
        """
        self._check_open()
        with self._registry_lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                raise EntityNotFoundError("trace", trace_id)
            if parent_span_id is not None:
                parent = self._spans.get(parent_span_id)
                if parent is None:
                    raise EntityNotFoundError("span", parent_span_id)
                if parent.trace_id != trace_id:
                    raise InvalidReferenceError(
                        f"parent span '{parent_span_id}' belongs to trace '{parent.trace_id}', not '{trace_id}'"
                    )

        span = Span(
            name=name,
            project_name=trace.project_name,
            workspace=trace.workspace,
            trace_id=trace_id,
            parent_span_id=parent_span_id,
            type=type,
            start_time=start_time or utcnow(),
            input=TriState.from_arg(input),
            metadata=TriState.from_arg(metadata),
            usage=TriState.from_arg(usage),
            model=model,
            provider=provider,
            tags=list(tags or []),
            _tracer=self,
        )
        self._writer.enqueue_create(span)
        with self._registry_lock:
            self._spans[span.id] = span
        logger.debug(f"Started {span.type} span {span.name!r} ({span.id}) in trace {trace_id}")
        return span

    # ── closing ────────────────────────────────────────────────────
    def end_trace(self, trace: Trace, end_time: datetime | None = None, **changes: Any) -> None:
        """Close a trace and enqueue one update carrying the passed fields."""
        self._check_open()
        self._check_tracked(trace, self._traces)
        trace._close(end_time, changes)
        changed = {k for k, v in changes.items() if v is not UNSET}
        self._writer.enqueue_update(trace.id, TraceUpdate.for_closed(trace, changed))
        logger.debug(f"Ended trace {trace.name!r} ({trace.id}) after {trace.duration_ms:.1f}ms")

    def end_span(self, span: Span, end_time: datetime | None = None, **changes: Any) -> None:
        """Close a span and enqueue one update. Its trace stays open."""
        self._check_open()
        self._check_tracked(span, self._spans)
        span._close(end_time, changes)
        changed = {k for k, v in changes.items() if v is not UNSET}
        self._writer.enqueue_update(span.id, SpanUpdate.for_closed(span, changed))
        logger.debug(f"Ended span {span.name!r} ({span.id}) after {span.duration_ms:.1f}ms")

    def _check_tracked(self, entity: Trace | Span, registry: dict) -> None:
        # closed entities report "already ended" even after eviction
        if entity.ended:
            raise AlreadyEndedError(entity.kind, entity.id)
        with self._registry_lock:
            if registry.get(entity.id) is not entity:
                raise EntityNotFoundError(entity.kind, entity.id)

    # ── lookup ─────────────────────────────────────────────────────
    def get_trace(self, trace_id: str) -> Trace | None:
        with self._registry_lock:
            return self._traces.get(trace_id)

    def get_span(self, span_id: str) -> Span | None:
        with self._registry_lock:
            return self._spans.get(span_id)

    def open_spans(self, trace_id: str) -> list[Span]:
        """Spans of a trace that were started but never ended."""
        with self._registry_lock:
            return [s for s in self._spans.values() if s.trace_id == trace_id and s.is_open]

    # ── flushing ───────────────────────────────────────────────────
    def flush(self, cancel: threading.Event | None = None) -> int:
        """Submit pending operations. See BatchWriter.flush."""
        return self._writer.flush(cancel)

    def _on_committed(self, ops: list[PendingOp]) -> None:
        # closing update submitted: the entity no longer needs tracking
        with self._registry_lock:
            for op in ops:
                if op.kind is OpKind.TRACE_UPDATE:
                    self._traces.pop(op.entity_id, None)
                elif op.kind is OpKind.SPAN_UPDATE:
                    self._spans.pop(op.entity_id, None)

    def close(self) -> None:
        """
        Stop the background flusher and submit what is left. When the final
        flush fails the tracer stays open, so close() can be called again.
        """
        if self._closed:
            return
        self._writer.stop()
        try:
            self._writer.flush()
        except Exception:
            self._writer.start()
            raise
        self._closed = True
        if self._owns_api:
            self._api.close()
        logger.debug("Tracer closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise TracerClosedError("tracer is closed")

    def __enter__(self) -> "Tracer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
