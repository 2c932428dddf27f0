"""Trace / span lifecycle, context propagation and batched submission."""

from tracing.optional import UNSET, FieldState, TriState
from tracing.models import EntityStatus, ErrorInfo, Span, SpanType, Trace
from tracing.context import (
    EMPTY_CONTEXT,
    TraceContext,
    current_context,
    span_from_context,
    span_scope,
    start_span,
    start_trace,
    trace_from_context,
    trace_scope,
    use_context,
)
from tracing.batch import BatchWriter, OpKind, PendingOp
from tracing.tracer import Tracer

__all__ = [
    "UNSET",
    "FieldState",
    "TriState",
    "EntityStatus",
    "ErrorInfo",
    "Span",
    "SpanType",
    "Trace",
    "EMPTY_CONTEXT",
    "TraceContext",
    "current_context",
    "span_from_context",
    "span_scope",
    "start_span",
    "start_trace",
    "trace_from_context",
    "trace_scope",
    "use_context",
    "BatchWriter",
    "OpKind",
    "PendingOp",
    "Tracer",
]
