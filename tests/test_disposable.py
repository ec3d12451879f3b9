"""Tests for one-shot (disposable) requests.

Covers:
- Sent until first success, then never again
- HTTP errors, transport errors and expectedResponse mismatches count as failures
- Rollback retries limit
- Spec changes start a fresh request
- Dry runs
"""

import pytest

from http_reconciler.errors import TransportError
from http_reconciler.reconcile.disposable import DisposableReconciler
from http_reconciler.reconcile.models import (
    Action,
    DisposableResource,
    DisposableSpec,
    DisposableStatus,
    ResourceState,
)

JOB_URL = "https://api.example.com/jobs"


def make_job(**overrides) -> DisposableResource:
    data = {
        "url": JOB_URL,
        "method": "post",
        "body": '{"task": "reindex"}',
        "headers": {"Content-Type": "application/json"},
    }
    data.update(overrides)
    return DisposableResource(name="reindex", spec=DisposableSpec.model_validate(data))


@pytest.fixture
def reconciler(fake_client):
    return DisposableReconciler(fake_client)


class TestDisposable:
    """Send-once semantics."""

    def test_first_send_succeeds(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 202, '{"job_status": "queued"}')

        result = reconciler.reconcile(make_job())

        assert result.success
        assert result.kind == "disposable"
        assert result.action == Action.CREATE
        assert result.state == ResourceState.SYNCED
        assert result.status.synced
        assert result.status.response.status_code == 202
        assert result.status.request_details.method == "POST"
        assert fake_client.calls[0].body == '{"task": "reindex"}'
        assert fake_client.calls[0].headers == {"Content-Type": ["application/json"]}

    def test_not_resent_after_success(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 200, "{}")
        job = make_job()
        first = reconciler.reconcile(job)

        second = reconciler.reconcile(job.model_copy(update={"status": first.status}))

        assert second.success
        assert second.action is None
        assert second.state == ResourceState.SYNCED
        assert len(fake_client.calls) == 1

    def test_http_error_is_failure(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 503, "busy")

        result = reconciler.reconcile(make_job())

        assert not result.success
        assert result.state == ResourceState.FAILED
        assert result.status.failed == 1
        assert result.error == f"POST {JOB_URL} returned HTTP 503"
        assert result.status.response.body == "busy"

    def test_transport_error_is_failure(self, reconciler, fake_client):
        fake_client.fail("POST", JOB_URL, TransportError("connection reset"))
        result = reconciler.reconcile(make_job())
        assert not result.success
        assert result.status.error == "connection reset"
        assert result.status.request_details.url == JOB_URL

    def test_failed_request_is_retried(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 500, "")
        fake_client.add("POST", JOB_URL, 200, "{}")
        job = make_job()

        first = reconciler.reconcile(job)
        second = reconciler.reconcile(job.model_copy(update={"status": first.status}))

        assert not first.success
        assert second.success
        assert second.status.failed == 0
        assert len(fake_client.calls) == 2

    def test_invalid_url_is_failure(self, reconciler, fake_client):
        result = reconciler.reconcile(make_job(url="ftp://example.com/x"))
        assert not result.success
        assert "must start with http:// or https://" in result.error
        assert fake_client.calls == []


class TestExpectedResponse:
    """expectedResponse decides whether a 2xx counts as success."""

    def test_match(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 200, '{"job_status": "success"}')
        result = reconciler.reconcile(make_job(expectedResponse='.body.job_status == "success"'))
        assert result.success

    def test_mismatch(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 200, '{"job_status": "failed"}')
        result = reconciler.reconcile(make_job(expectedResponse='.body.job_status == "success"'))
        assert not result.success
        assert "does not match expected response" in result.error
        assert result.status.failed == 1

    def test_predicate_error(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 200, "{}")
        result = reconciler.reconcile(make_job(expectedResponse=".body.job_status == 1"))
        assert not result.success
        assert "field not found" in result.error


class TestRetriesAndSpecChanges:
    """Rollback limit and spec hash handling."""

    def test_limit_exceeded(self, reconciler, fake_client):
        job = make_job(rollbackRetriesLimit=2)
        status = DisposableStatus(failed=3, error="last error", spec_hash=job.spec.spec_hash())

        result = reconciler.reconcile(job.model_copy(update={"status": status}))

        assert not result.success
        assert result.state == ResourceState.FAILED
        assert result.error == "last error"
        assert fake_client.calls == []

    def test_zero_limit_still_sends_once(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 500, "")
        job = make_job(rollbackRetriesLimit=0)

        first = reconciler.reconcile(job)
        second = reconciler.reconcile(job.model_copy(update={"status": first.status}))

        assert len(fake_client.calls) == 1
        assert first.status.failed == 1
        assert not second.success
        assert second.error == f"POST {JOB_URL} returned HTTP 500"

    def test_spec_change_resends(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 200, "{}")
        job = make_job()
        done = DisposableStatus(
            state=ResourceState.SYNCED, synced=True, spec_hash="previous-spec"
        )

        result = reconciler.reconcile(job.model_copy(update={"status": done}))

        assert result.action == Action.CREATE
        assert result.status.spec_hash == job.spec.spec_hash()
        assert len(fake_client.calls) == 1

    def test_dry_run(self, reconciler, fake_client):
        result = reconciler.reconcile(make_job(), dry_run=True)
        assert result.success
        assert result.action == Action.CREATE
        assert fake_client.calls == []

    def test_transport_options(self, reconciler, fake_client):
        fake_client.add("POST", JOB_URL, 200, "{}")
        reconciler.reconcile(make_job(insecureSkipTLSVerify=True, waitTimeout=2))
        assert fake_client.call_kwargs == [{"skip_tls_verify": True, "timeout": 2.0}]
