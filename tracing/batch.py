"""
Batch write layer.

Create and update operations are encoded at enqueue time and held in one
ordered pending list. flush() submits them grouped by kind, in this order:

  trace-create → span-create → trace-update → span-update

so that within one flush an entity's create always precedes its update.
Each request is its own failure domain: a failed request leaves its ops
pending and the rest of the flush carries on. Ops are removed from the
pending list only after the request carrying them succeeded, so a retry
never resends committed ops.

Idempotency caveat: a request that reached the server before a timeout or
cancel is resent on the next flush. Entity ids are generated client-side, so
the server can deduplicate creates by id.
"""
import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator

from api.client import ApiClient
from core.errors import (
    BatchFlushError,
    FlushCancelledError,
    SubBatchFailure,
    TracingError,
)
from tracing.models import Span, Trace
from tracing.payloads import SpanUpdate, SpanWrite, TraceUpdate, TraceWrite

logger = logging.getLogger(__name__)


class OpKind(str, Enum):
    TRACE_CREATE = "trace-create"
    SPAN_CREATE = "span-create"
    TRACE_UPDATE = "trace-update"
    SPAN_UPDATE = "span-update"


FLUSH_ORDER = (OpKind.TRACE_CREATE, OpKind.SPAN_CREATE, OpKind.TRACE_UPDATE, OpKind.SPAN_UPDATE)
CREATE_KINDS = frozenset({OpKind.TRACE_CREATE, OpKind.SPAN_CREATE})
UPDATE_KINDS = frozenset({OpKind.TRACE_UPDATE, OpKind.SPAN_UPDATE})


@dataclass(eq=False)
class PendingOp:
    """One encoded create or update waiting for submission."""
    kind: OpKind
    entity_id: str
    payload: dict[str, Any]


class BatchWriter:
    """Accumulates pending operations and submits them in bulk requests."""

    def __init__(
        self,
        api: ApiClient,
        *,
        max_batch_size: int = 1000,
        flush_interval: float | None = None,
        flush_batch_size: int = 100,
        on_committed: Callable[[list[PendingOp]], None] | None = None,
    ):
        self._api = api
        self._max_batch_size = max_batch_size
        self._flush_interval = flush_interval
        self._flush_batch_size = flush_batch_size
        self._on_committed = on_committed

        self._pending: list[PendingOp] = []
        self._lock = threading.Lock()        # guards _pending
        self._flush_lock = threading.Lock()  # one flush at a time

        self._thread: threading.Thread | None = None
        self._wake = threading.Event()
        self._stop = threading.Event()

    # ── enqueue ────────────────────────────────────────────────────
    def enqueue_create(self, entity: Trace | Span) -> PendingOp:
        if isinstance(entity, Trace):
            op = PendingOp(OpKind.TRACE_CREATE, entity.id, TraceWrite.from_trace(entity).to_wire())
        else:
            op = PendingOp(OpKind.SPAN_CREATE, entity.id, SpanWrite.from_span(entity).to_wire())
        self._append(op)
        return op

    def enqueue_update(self, entity_id: str, update: TraceUpdate | SpanUpdate) -> PendingOp:
        kind = OpKind.TRACE_UPDATE if isinstance(update, TraceUpdate) else OpKind.SPAN_UPDATE
        op = PendingOp(kind, entity_id, update.to_wire())
        self._append(op)
        return op

    def _append(self, op: PendingOp) -> None:
        with self._lock:
            self._pending.append(op)
            size = len(self._pending)
        logger.debug(f"Enqueued {op.kind.value} for {op.entity_id} ({size} pending)")
        if self._thread is not None and size >= self._flush_batch_size:
            self._wake.set()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_ops(self) -> list[PendingOp]:
        """Snapshot of the pending list, in enqueue order."""
        with self._lock:
            return list(self._pending)

    # ── flush ──────────────────────────────────────────────────────
    def flush(self, cancel: threading.Event | None = None) -> int:
        """
        Submit everything pending at call time. Returns the number of ops
        committed. Raises BatchFlushError listing failed requests, or
        FlushCancelledError when `cancel` is set before a request goes out.
        """
        with self._flush_lock:
            snapshot = self.pending_ops()
            if not snapshot:
                return 0

            by_kind: dict[OpKind, list[PendingOp]] = {kind: [] for kind in FLUSH_ORDER}
            for op in snapshot:
                by_kind[op.kind].append(op)

            committed: list[PendingOp] = []
            failures: list[SubBatchFailure] = []
            failed_creates: set[str] = set()

            try:
                for kind in FLUSH_ORDER:
                    ops = by_kind[kind]
                    if kind in UPDATE_KINDS and failed_creates:
                        held = [op for op in ops if op.entity_id in failed_creates]
                        if held:
                            logger.warning(f"Holding back {len(held)} {kind.value} op(s) whose create failed")
                            ops = [op for op in ops if op.entity_id not in failed_creates]

                    for group in self._requests(kind, ops):
                        if cancel is not None and cancel.is_set():
                            raise FlushCancelledError(
                                f"flush cancelled with {len(snapshot) - len(committed)} op(s) unsent",
                                failures,
                            )
                        try:
                            self._send(kind, group)
                        except Exception as e:
                            # any request error stays local to its sub-batch
                            logger.warning(f"{kind.value} request for {len(group)} entities failed: {e}")
                            failures.append(SubBatchFailure(kind.value, [op.entity_id for op in group], e))
                            if kind in CREATE_KINDS:
                                failed_creates.update(op.entity_id for op in group)
                        else:
                            committed.extend(group)
            finally:
                self._commit(committed)

            if failures:
                raise BatchFlushError(failures)
            logger.info(f"Flushed {len(committed)} operation(s)")
            return len(committed)

    def _requests(self, kind: OpKind, ops: list[PendingOp]) -> Iterator[list[PendingOp]]:
        """Split one kind's ops into the groups sent as single requests."""
        if kind in CREATE_KINDS:
            yield from _chunks(ops, self._max_batch_size)
            return

        # bulk update applies one shared payload to many ids
        groups: dict[str, list[PendingOp]] = {}
        for op in ops:
            key = json.dumps(op.payload, sort_keys=True)
            groups.setdefault(key, []).append(op)
        for group in groups.values():
            yield from _chunks(group, self._max_batch_size)

    def _send(self, kind: OpKind, group: list[PendingOp]) -> None:
        if kind is OpKind.TRACE_CREATE:
            self._api.create_traces([op.payload for op in group])
        elif kind is OpKind.SPAN_CREATE:
            self._api.create_spans([op.payload for op in group])
        elif kind is OpKind.TRACE_UPDATE:
            self._api.update_traces([op.entity_id for op in group], group[0].payload)
        else:
            self._api.update_spans([op.entity_id for op in group], group[0].payload)
        logger.debug(f"Submitted {kind.value} x{len(group)}")

    def _commit(self, committed: list[PendingOp]) -> None:
        if not committed:
            return
        done = {id(op) for op in committed}
        with self._lock:
            self._pending = [op for op in self._pending if id(op) not in done]
        if self._on_committed:
            self._on_committed(committed)

    # ── background flusher ─────────────────────────────────────────
    def start(self) -> None:
        """Start the background flusher. No-op without a flush interval."""
        if self._flush_interval is None or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="trace-batch-flusher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the background flusher. Pending ops are left for the caller."""
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        self._wake.set()
        thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self._flush_interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self.flush(cancel=self._stop)
            except TracingError as e:
                logger.warning(f"Background flush failed, operations stay pending: {e}")
            except Exception:
                logger.exception("Background flush raised unexpectedly, operations stay pending")


def _chunks(ops: list[PendingOp], size: int) -> Iterator[list[PendingOp]]:
    for i in range(0, len(ops), size):
        yield ops[i:i + size]
