"""Tests for the HTTP transport.

Covers:
- Request construction (headers joined, body encoding, TLS, timeout)
- Response conversion
- Transport errors
- Thread-local sessions and close()
"""

import json
import threading
from unittest.mock import Mock, patch

import pytest
import requests

from http_reconciler.core.client import HttpClient, HttpRequest
from http_reconciler.errors import TransportError

URL = "https://api.example.com/users"


def _mock_response(status=200, text='{"id":"1"}', headers=None):
    response = Mock()
    response.status_code = status
    response.text = text
    response.headers = headers or {"Content-Type": "application/json"}
    return response


@patch("http_reconciler.core.client.requests.Session.request")
def test_send_builds_request(mock_request):
    """Header values are joined and the body is sent as UTF-8 bytes."""
    mock_request.return_value = _mock_response()
    client = HttpClient(timeout=12.0)

    client.send(
        "POST",
        URL,
        '{"name":"Zoë"}',
        {"Accept": ["application/json", "text/plain"]},
    )

    args, kwargs = mock_request.call_args
    assert args == ("POST", URL)
    assert kwargs["data"] == '{"name":"Zoë"}'.encode("utf-8")
    assert kwargs["headers"] == {"Accept": "application/json, text/plain"}
    assert kwargs["verify"] is True
    assert kwargs["timeout"] == 12.0


@patch("http_reconciler.core.client.requests.Session.request")
def test_send_empty_body_sends_no_data(mock_request):
    mock_request.return_value = _mock_response()
    HttpClient().send("GET", URL)
    assert mock_request.call_args[1]["data"] is None


@patch("http_reconciler.core.client.requests.Session.request")
def test_send_per_call_options(mock_request):
    """skip_tls_verify and timeout apply to the single call only."""
    mock_request.return_value = _mock_response()
    client = HttpClient(timeout=30.0)

    client.send("GET", URL, skip_tls_verify=True, timeout=2.5)
    kwargs = mock_request.call_args[1]
    assert kwargs["verify"] is False
    assert kwargs["timeout"] == 2.5

    client.send("GET", URL)
    kwargs = mock_request.call_args[1]
    assert kwargs["verify"] is True
    assert kwargs["timeout"] == 30.0


@patch("http_reconciler.core.client.requests.Session.request")
def test_send_returns_details(mock_request):
    mock_request.return_value = _mock_response(status=404, text="missing")

    details = HttpClient().send("GET", URL, headers={"X-Trace": ["abc"]})

    assert details.request.method == "GET"
    assert details.request.headers == {"X-Trace": ["abc"]}
    assert details.response.status_code == 404
    assert details.response.body == "missing"
    assert details.response.headers == {"Content-Type": ["application/json"]}


@patch("http_reconciler.core.client.requests.Session.request")
def test_transport_error(mock_request):
    """requests exceptions become TransportError."""
    mock_request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(TransportError, match=f"GET {URL} failed: refused"):
        HttpClient().send("GET", URL)


@patch("http_reconciler.core.client.requests.Session.request")
def test_timeout_is_transport_error(mock_request):
    mock_request.side_effect = requests.Timeout("read timed out")
    with pytest.raises(TransportError):
        HttpClient().send("GET", URL)


def test_request_log_omits_body():
    request = HttpRequest(method="POST", url=URL, body="secret", headers={"A": ["1"]})
    logged = json.loads(request.to_log())
    assert logged == {"method": "POST", "url": URL, "headers": {"A": ["1"]}}


def test_sessions_are_thread_local():
    client = HttpClient()
    main_session = client._get_session()
    assert client._get_session() is main_session

    other = []
    thread = threading.Thread(target=lambda: other.append(client._get_session()))
    thread.start()
    thread.join()

    assert other[0] is not main_session
    assert len(client._sessions) == 2
    client.close()
    assert client._sessions == []


def test_close_closes_sessions():
    client = HttpClient()
    session = client._get_session()
    with patch.object(session, "close") as mock_close:
        client.close()
    mock_close.assert_called_once()
