import json
import logging
import threading
from dataclasses import asdict, dataclass, field

import requests

from ..errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class HttpRequest:
    method: str
    url: str
    body: str = ""
    headers: dict[str, list[str]] = field(default_factory=dict)

    def to_log(self) -> str:
        """JSON description of the request, body omitted."""
        data = asdict(self)
        data.pop("body")
        return json.dumps(data, sort_keys=True)


@dataclass
class HttpResponse:
    status_code: int
    headers: dict[str, list[str]] = field(default_factory=dict)
    body: str = ""


@dataclass
class HttpDetails:
    request: HttpRequest
    response: HttpResponse


class HttpClient:
    """Send single HTTP requests on behalf of the reconciler.

    One ``requests.Session`` is kept per thread so parallel reconciles
    never share a connection pool.  No retries happen here: retrying is a
    reconcile-level decision.

    Args:
        timeout: Default timeout in seconds, used when a call passes none.
        log: Logger to use instead of the module logger.
    """

    def __init__(
        self, timeout: float = 30.0, log: logging.Logger | None = None
    ):
        self.timeout = timeout
        self.log = log or logger
        self._thread_local = threading.local()
        self._sessions: list[requests.Session] = []
        self._lock = threading.Lock()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = self._create_session()
            self._thread_local.session = session
            with self._lock:
                self._sessions.append(session)
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        return requests.Session()

    def send(
        self,
        method: str,
        url: str,
        body: str = "",
        headers: dict[str, list[str]] | None = None,
        skip_tls_verify: bool = False,
        timeout: float | None = None,
    ) -> HttpDetails:
        """
        Send one request and return the request/response pair.

        Args:
            method: HTTP method.
            url: Absolute URL.
            body: Request body; empty means no body.
            headers: Header values; multiple values are joined with ", ".
            skip_tls_verify: Disable certificate validation for this call only.
            timeout: Timeout in seconds (defaults to the client timeout).

        Returns:
            HttpDetails with the sent request and the received response.
            HTTP error statuses are returned, not raised.

        Raises:
            TransportError: Connection failure, TLS error or timeout.
        """
        request = HttpRequest(
            method=method, url=url, body=body, headers=dict(headers or {})
        )
        wire_headers = {
            name: ", ".join(values) for name, values in request.headers.items()
        }

        session = self._get_session()
        try:
            response = session.request(
                method,
                url,
                data=body.encode("utf-8") if body else None,
                headers=wire_headers,
                verify=not skip_tls_verify,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.RequestException as exc:
            self.log.warning("http request failed: %s: %s", request.to_log(), exc)
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        self.log.info("http request sent: %s", request.to_log())

        return HttpDetails(
            request=request,
            response=HttpResponse(
                status_code=response.status_code,
                headers={k: [v] for k, v in response.headers.items()},
                body=response.text,
            ),
        )

    def close(self) -> None:
        """Close every session opened by this client."""
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
