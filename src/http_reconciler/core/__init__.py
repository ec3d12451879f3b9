"""Transport and async helpers shared by the reconciler and the CLI."""

from .async_utils import run_sync
from .client import HttpClient, HttpDetails, HttpRequest, HttpResponse

__all__ = ["HttpClient", "HttpDetails", "HttpRequest", "HttpResponse", "run_sync"]
