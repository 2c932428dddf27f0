"""Unit tests for the batch write layer: ordering, partial failure, cancellation."""

import logging
import threading
import time
from datetime import timedelta

import httpx
import pytest

from api.client import ApiClient
from core.errors import BatchFlushError, EncodingInvariantError, FlushCancelledError
from tracing.batch import BatchWriter, OpKind
from tracing.optional import FieldState, TriState
from tracing.payloads import TraceUpdate
from tracing.tracer import Tracer


def _wait_for(condition, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def _full_flow(tracer):
    trace = tracer.create_trace("t1")
    span = trace.span("s1", type="llm")
    span.end(output={"r": "x"})
    trace.end(output={"final": "y"})
    return trace, span


@pytest.mark.unit
class TestFlushOrdering:
    def test_creates_go_before_updates(self, tracer, server):
        trace = tracer.create_trace("first")
        span = trace.span("s")
        span.end()
        trace.end()
        tracer.create_trace("second")

        tracer.flush()

        sequence = [(r.method, r.path.rsplit("/", 2)[-2]) for r in server.requests]
        assert sequence == [
            ("POST", "traces"),
            ("POST", "spans"),
            ("PATCH", "traces"),
            ("PATCH", "spans"),
        ]
        assert len(server.trace_creates[0].body["traces"]) == 2

    def test_empty_flush_sends_nothing(self, tracer, server):
        assert tracer.flush() == 0
        assert server.requests == []

    def test_ops_enqueued_after_flush_stay_pending(self, tracer, server):
        tracer.create_trace("a")
        tracer.flush()
        tracer.create_trace("b")
        assert tracer.pending_count == 1
        assert [op.kind for op in tracer.writer.pending_ops()] == [OpKind.TRACE_CREATE]


@pytest.mark.unit
class TestPartialFailure:
    def test_failing_span_update_still_commits_trace_update(self, tracer, server):
        trace, span = _full_flow(tracer)
        server.fail("PATCH", "/spans/batch", status=404)

        with pytest.raises(BatchFlushError) as exc:
            tracer.flush()

        assert exc.value.failed_kinds == {"span-update"}
        assert exc.value.failures[0].entity_ids == [span.id]
        assert exc.value.failures[0].error.status_code == 404
        assert len(server.trace_updates) == 1
        assert tracer.pending_count == 1

        server.heal()
        assert tracer.flush() == 1
        # committed ops were not resent
        assert len(server.trace_creates) == 1
        assert len(server.span_creates) == 1
        assert len(server.trace_updates) == 1
        assert len(server.span_updates) == 2

    def test_update_is_held_back_when_its_create_failed(self, tracer, server):
        trace = tracer.create_trace("t")
        trace.end()
        server.fail("POST", "/traces/batch", status=503)

        with pytest.raises(BatchFlushError) as exc:
            tracer.flush()

        assert exc.value.failed_kinds == {"trace-create"}
        assert server.trace_updates == []
        assert tracer.pending_count == 2

        server.heal()
        assert tracer.flush() == 2
        assert len(server.trace_updates) == 1

    def test_all_failed_sub_batches_are_reported(self, tracer, server):
        _full_flow(tracer)
        server.fail("POST", "/spans/batch")
        server.fail("PATCH", "/traces/batch")

        with pytest.raises(BatchFlushError) as exc:
            tracer.flush()

        assert exc.value.failed_kinds == {"span-create", "trace-update"}
        assert "span-create" in str(exc.value)
        # span update held back behind its failed create, trace create committed
        assert len(server.trace_creates) == 1
        assert server.span_updates == []
        assert tracer.pending_count == 3

    def test_unexpected_request_error_stays_in_its_sub_batch(self, config, server):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PATCH" and b"broken" in request.content:
                raise RuntimeError("connection pool closed")
            return server.handler(request)

        config.transport = httpx.MockTransport(handler)
        tracer = Tracer(config)
        trace = tracer.create_trace("t")
        trace.span("a").end(output={"status": "broken"})
        ok = trace.span("b")
        ok.end(output={"status": "fine"})
        trace.end()

        with pytest.raises(BatchFlushError) as exc:
            tracer.flush()

        assert exc.value.failed_kinds == {"span-update"}
        assert isinstance(exc.value.failures[0].error, RuntimeError)
        assert len(server.trace_updates) == 1
        assert [r.body["ids"] for r in server.span_updates] == [[ok.id]]
        assert tracer.pending_count == 1
        with pytest.raises(BatchFlushError):
            tracer.close()


@pytest.mark.unit
class TestCancellation:
    def test_cancel_before_flush_sends_nothing(self, tracer, server):
        _full_flow(tracer)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(FlushCancelledError):
            tracer.flush(cancel)

        assert server.requests == []
        assert tracer.pending_count == 4

    def test_cancel_mid_flush_keeps_unsent_ops(self, config, server):
        cancel = threading.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            response = server.handler(request)
            cancel.set()
            return response

        config.transport = httpx.MockTransport(handler)
        tracer = Tracer(config)
        _full_flow(tracer)

        with pytest.raises(FlushCancelledError):
            tracer.flush(cancel)

        assert len(server.requests) == 1
        assert tracer.pending_count == 3
        assert OpKind.TRACE_CREATE not in {op.kind for op in tracer.writer.pending_ops()}

        assert tracer.flush() == 3
        assert len(server.trace_creates) == 1
        tracer.close()

    def test_cancel_reports_failures_seen_before_it(self, config, server):
        cancel = threading.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            response = server.handler(request)
            cancel.set()
            return response

        server.fail("POST", "/traces/batch")
        config.transport = httpx.MockTransport(handler)
        tracer = Tracer(config)
        _full_flow(tracer)

        with pytest.raises(FlushCancelledError) as exc:
            tracer.flush(cancel)

        assert exc.value.failed_kinds == {"trace-create"}
        assert "trace-create" in str(exc.value)
        assert len(server.requests) == 1
        assert tracer.pending_count == 4

        server.heal()
        tracer.close()
        assert tracer.pending_count == 0


@pytest.mark.unit
class TestRequestGrouping:
    def test_identical_updates_are_coalesced(self, tracer, server):
        trace = tracer.create_trace("t")
        a = trace.span("a")
        b = trace.span("b")
        end = max(a.start_time, b.start_time) + timedelta(seconds=1)
        a.end(end, output={"same": True})
        b.end(end, output={"same": True})

        tracer.flush()

        assert len(server.span_updates) == 1
        assert server.span_updates[0].body["ids"] == [a.id, b.id]

    def test_distinct_updates_are_separate_requests(self, tracer, server):
        trace = tracer.create_trace("t")
        trace.span("a").end(output={"n": 1})
        trace.span("b").end(output={"n": 2})
        tracer.flush()
        assert len(server.span_updates) == 2

    def test_creates_are_chunked(self, config, server):
        config.max_batch_size = 2
        with Tracer(config) as tracer:
            for i in range(5):
                tracer.create_trace(f"t{i}")
            tracer.flush()
        assert [len(r.body["traces"]) for r in server.trace_creates] == [2, 2, 1]


@pytest.mark.unit
class TestEnqueue:
    def test_inconsistent_field_is_caught_before_submission(self, config, server):
        writer = BatchWriter(ApiClient(config))
        broken = TriState()
        broken._state = FieldState.PRESENT  # corrupt on purpose
        with pytest.raises(EncodingInvariantError):
            writer.enqueue_update("t-1", TraceUpdate(project_name="p", output=broken))
        assert writer.pending_count == 0
        assert server.requests == []


@pytest.mark.unit
class TestBackgroundFlusher:
    def test_interval_flush(self, config, server):
        config.flush_interval = 0.05
        tracer = Tracer(config)
        try:
            assert tracer.writer.running
            tracer.create_trace("t")
            assert _wait_for(lambda: len(server.trace_creates) == 1)
            assert _wait_for(lambda: tracer.pending_count == 0)
        finally:
            tracer.close()
        assert not tracer.writer.running

    def test_size_threshold_wakes_flusher(self, config, server):
        config.flush_interval = 60
        config.flush_batch_size = 2
        tracer = Tracer(config)
        try:
            tracer.create_trace("a")
            tracer.create_trace("b")
            assert _wait_for(lambda: len(server.trace_creates) == 1)
        finally:
            tracer.close()

    def test_background_errors_are_logged_and_kept(self, config, server, caplog):
        config.flush_interval = 0.05
        server.fail("POST", "/traces/batch")
        tracer = Tracer(config)
        try:
            with caplog.at_level(logging.WARNING, logger="tracing.batch"):
                tracer.create_trace("t")
                assert _wait_for(lambda: "Background flush failed" in caplog.text)
            assert tracer.pending_count == 1
            server.heal()
        finally:
            tracer.close()
        assert tracer.pending_count == 0

    def test_no_thread_without_interval(self, tracer):
        assert not tracer.writer.running

    def test_flusher_survives_unexpected_errors(self, config, server, monkeypatch, caplog):
        config.flush_interval = 0.05
        tracer = Tracer(config)
        writer = tracer.writer
        flush = writer.flush
        calls: list[int] = []

        def flaky_flush(cancel=None):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("unexpected")
            return flush(cancel)

        monkeypatch.setattr(writer, "flush", flaky_flush)
        try:
            with caplog.at_level(logging.ERROR, logger="tracing.batch"):
                tracer.create_trace("t")
                assert _wait_for(lambda: len(server.trace_creates) == 1)
            assert "raised unexpectedly" in caplog.text
            assert writer.running
            assert writer._thread.is_alive()
        finally:
            tracer.close()
