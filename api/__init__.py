"""Remote tracing API client."""

from api.client import ApiClient, Page

__all__ = [
    "ApiClient",
    "Page",
]
