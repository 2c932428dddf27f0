"""
Current trace / current span propagation.

A TraceContext is an immutable value carrying at most one active trace and
one active span. start_trace / start_span never modify the context they are
given; they return a derived one for the caller to pass on. Two branches
derived from the same context never see each other's spans:

    ctx, trace = start_trace(None, tracer, "agent_run")
    ctx_a, search = start_span(ctx, "search", type="tool")
    ctx_b, answer = start_span(ctx, "answer", type="llm")   # sibling, not child

For code that cannot thread a context through, trace_scope / span_scope
install the derived context in a ContextVar for the duration of a `with`
block and restore the previous one on exit. ContextVar values are copied into
new threads' and tasks' contexts, so concurrent call chains stay isolated.
"""
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Iterator

from core.errors import AlreadyEndedError, NoActiveTraceError
from tracing.models import ErrorInfo, Span, Trace

if TYPE_CHECKING:
    from tracing.tracer import Tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TraceContext:
    """Active trace and span of one call chain."""
    trace: Trace | None = None
    span: Span | None = None

    def with_trace(self, trace: Trace) -> "TraceContext":
        return TraceContext(trace=trace, span=None)

    def with_span(self, span: Span) -> "TraceContext":
        return replace(self, span=span)

    @property
    def is_empty(self) -> bool:
        return self.trace is None and self.span is None


EMPTY_CONTEXT = TraceContext()

_current: ContextVar[TraceContext] = ContextVar("trace_context", default=EMPTY_CONTEXT)


def current_context() -> TraceContext:
    """The ambient context installed by use_context / the scope helpers."""
    return _current.get()


@contextmanager
def use_context(ctx: TraceContext) -> Iterator[TraceContext]:
    """Install `ctx` as the ambient context; restore the previous one on exit."""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


def start_trace(
    ctx: TraceContext | None,
    tracer: "Tracer",
    name: str,
    **options: Any,
) -> tuple[TraceContext, Trace]:
    """Create a trace and return a context where it is the current trace."""
    if ctx is None:
        ctx = current_context()
    trace = tracer.create_trace(name, **options)
    return ctx.with_trace(trace), trace


def start_span(
    ctx: TraceContext | None,
    name: str,
    **options: Any,
) -> tuple[TraceContext, Span]:
    """
    Create a span under the context's current span, or as a root span of the
    context's current trace. An explicit parent_span_id option wins over the
    context's span. Raises NoActiveTraceError for an empty context.
    """
    if ctx is None:
        ctx = current_context()

    parent = ctx.span
    if parent is not None:
        options.setdefault("parent_span_id", parent.id)
        span = parent._require_tracer().create_span(parent.trace_id, name, **options)
    elif ctx.trace is not None:
        span = ctx.trace._require_tracer().create_span(ctx.trace.id, name, **options)
    else:
        raise NoActiveTraceError()
    return ctx.with_span(span), span


def trace_from_context(ctx: TraceContext | None) -> Trace | None:
    """Current trace of `ctx`, or None. Never raises."""
    if not isinstance(ctx, TraceContext):
        return None
    if ctx.trace is not None:
        return ctx.trace
    if ctx.span is not None and ctx.span._tracer is not None:
        return ctx.span._tracer.get_trace(ctx.span.trace_id)
    return None


def span_from_context(ctx: TraceContext | None) -> Span | None:
    """Current span of `ctx`, or None. Never raises."""
    if not isinstance(ctx, TraceContext):
        return None
    return ctx.span


# ── scoped helpers ─────────────────────────────────────────────────
@contextmanager
def trace_scope(
    tracer: "Tracer",
    name: str,
    ctx: TraceContext | None = None,
    **options: Any,
) -> Iterator[Trace]:
    """
    Start a trace, make it ambient for the block, end it on exit.
    On exception the trace is ended with error_info, then the error re-raises.
    """
    new_ctx, trace = start_trace(ctx, tracer, name, **options)
    with use_context(new_ctx):
        try:
            yield trace
        except Exception as exc:
            _end_if_open(trace, error_info=ErrorInfo.from_exception(exc))
            raise
        _end_if_open(trace)


@contextmanager
def span_scope(
    name: str,
    ctx: TraceContext | None = None,
    **options: Any,
) -> Iterator[Span]:
    """Span counterpart of trace_scope. The ambient context supplies the parent."""
    new_ctx, span = start_span(ctx, name, **options)
    with use_context(new_ctx):
        try:
            yield span
        except Exception as exc:
            _end_if_open(span, error_info=ErrorInfo.from_exception(exc))
            raise
        _end_if_open(span)


def _end_if_open(entity: Trace | Span, **kwargs: Any) -> None:
    if not entity.is_open:
        return
    try:
        entity.end(**kwargs)
    except AlreadyEndedError:
        # ended concurrently by the block's own code; nothing left to do
        logger.debug(f"{entity.kind} {entity.id} was ended concurrently")
