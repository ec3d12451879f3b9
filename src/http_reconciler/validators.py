"""
Validation helpers for rendered requests and HTTP responses.

Provides URL well-formedness checks and status-code classification used
by the request generator and the reconciliation state machine.
"""

from urllib.parse import urlparse

# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "URL")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_url(url: str) -> tuple[bool, str]:
    """
    Validate a rendered request URL.

    Args:
        url: The URL to validate

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Must use the http or https scheme
        - Must include a hostname
    """
    if not url or not url.strip():
        return (False, format_validation_error("URL", "cannot be empty"))

    try:
        parsed = urlparse(url)
    except ValueError as exc:
        return (False, format_validation_error(f"URL '{url}'", f"is malformed: {exc}"))

    if parsed.scheme not in ("http", "https"):
        return (
            False,
            format_validation_error(
                f"URL '{url}'", "must start with http:// or https://"
            ),
        )

    if not parsed.hostname:
        return (
            False,
            format_validation_error(f"URL '{url}'", "must include a hostname"),
        )

    return (True, "")


def is_url_valid(url: str) -> bool:
    """Return ``True`` if *url* is an absolute http(s) URL with a host."""
    return validate_url(url)[0]


def is_http_success(status_code: int) -> bool:
    """Return ``True`` for 2xx status codes."""
    return 200 <= status_code < 300


def is_http_error(status_code: int) -> bool:
    """Return ``True`` for 4xx and 5xx status codes."""
    return 400 <= status_code < 600
