"""Client-wide exception hierarchy."""
from dataclasses import dataclass


class TracingError(Exception):
    """Base exception for all tracing client errors."""
    pass

class ConfigurationError(TracingError):
    """Missing or invalid client configuration. Raised before any network activity."""
    pass

class InvalidReferenceError(TracingError):
    """An operation referenced a trace or span that cannot be used."""
    pass

class NoActiveTraceError(InvalidReferenceError):
    """start_span was called with a context carrying neither a trace nor a span."""
    def __init__(self, message: str = "no active trace or span in context"):
        super().__init__(message)

class EntityNotFoundError(InvalidReferenceError):
    """Entity is unknown: never created here or already evicted from tracking."""
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' not found")

class AlreadyEndedError(InvalidReferenceError):
    """end() was called on an entity that is already closed."""
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' already ended")

class InvalidEndTimeError(TracingError, ValueError):
    """Explicit end time is earlier than the entity's start time."""
    pass

class TransportError(TracingError):
    """Network failure, timeout or non-2xx response from the remote API."""
    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message if status_code is None else f"HTTP {status_code}: {message}")

class EncodingInvariantError(TracingError):
    """A tri-state value reached the wire boundary in an inconsistent state."""
    pass


@dataclass
class SubBatchFailure:
    """One failed request inside a flush."""
    kind: str
    entity_ids: list[str]
    error: Exception

    def __str__(self) -> str:
        return f"{self.kind} ({len(self.entity_ids)} entities): {self.error}"


class TracerClosedError(TracingError):
    """The tracer was closed; it accepts no new creates or ends."""
    pass


class FlushCancelledError(TracingError):
    """
    Flush was cancelled; unsent operations remain pending. `failures` lists
    requests that had already failed in the same flush before the cancel.
    """
    def __init__(self, message: str, failures: list[SubBatchFailure] | None = None):
        self.failures = list(failures or [])
        if self.failures:
            details = "; ".join(str(f) for f in self.failures)
            message = f"{message}; {len(self.failures)} sub-batch(es) failed before the cancel: {details}"
        super().__init__(message)

    @property
    def failed_kinds(self) -> set[str]:
        return {f.kind for f in self.failures}


class BatchFlushError(TracingError):
    """One or more sub-batches failed. Successful sub-batches were committed."""
    def __init__(self, failures: list[SubBatchFailure]):
        self.failures = failures
        details = "; ".join(str(f) for f in failures)
        super().__init__(f"{len(failures)} sub-batch(es) failed: {details}")

    @property
    def failed_kinds(self) -> set[str]:
        return {f.kind for f in self.failures}
