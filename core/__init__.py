"""Configuration and error types shared by the tracing client."""

from core.config import ClientConfig, DEFAULT_BASE_URL, DEFAULT_PROJECT_NAME
from core.errors import (
    AlreadyEndedError,
    BatchFlushError,
    ConfigurationError,
    EncodingInvariantError,
    EntityNotFoundError,
    FlushCancelledError,
    InvalidEndTimeError,
    InvalidReferenceError,
    NoActiveTraceError,
    SubBatchFailure,
    TracerClosedError,
    TracingError,
    TransportError,
)

__all__ = [
    "ClientConfig",
    "DEFAULT_BASE_URL",
    "DEFAULT_PROJECT_NAME",
    "AlreadyEndedError",
    "BatchFlushError",
    "ConfigurationError",
    "EncodingInvariantError",
    "EntityNotFoundError",
    "FlushCancelledError",
    "InvalidEndTimeError",
    "InvalidReferenceError",
    "NoActiveTraceError",
    "SubBatchFailure",
    "TracerClosedError",
    "TracingError",
    "TransportError",
]
