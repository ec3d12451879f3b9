"""One-shot (disposable) requests.

A disposable request is sent until it succeeds once and is never sent
again afterwards.  Success means a non-error HTTP status and, when an
``expectedResponse`` predicate is declared, a truthy predicate.  Failed
attempts count toward ``rollbackRetriesLimit``; changing the spec starts
over with a fresh request.
"""

from __future__ import annotations

import logging

from ..core.client import HttpClient
from ..errors import ReconcilerError, RequestValidationError
from ..validators import is_http_error, validate_url
from .comparator import matches_expected_response
from .engine import retries_exhausted, to_response
from .models import (
    Action,
    DisposableResource,
    DisposableStatus,
    ReconcileResult,
    RequestSnapshot,
    ResourceState,
)

logger = logging.getLogger(__name__)


class DisposableReconciler:
    """Send disposable requests until they succeed once.

    Args:
        client: Transport used to send requests.
        log: Logger to use instead of the module logger.
    """

    def __init__(
        self,
        client: HttpClient,
        log: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.log = log or logger

    def reconcile(
        self, resource: DisposableResource, dry_run: bool = False
    ) -> ReconcileResult:
        """Send the request unless it already succeeded.

        Args:
            resource: The disposable request with its persisted status.
            dry_run: If ``True``, report the pending send without sending.

        Returns:
            A ``ReconcileResult`` carrying the new status to persist.
        """
        spec = resource.spec
        status = resource.status
        spec_hash = spec.spec_hash()
        if status.spec_hash != spec_hash:
            if status.spec_hash:
                self.log.info("%s: spec changed, request will be resent", resource.name)
            status = DisposableStatus(spec_hash=spec_hash)

        if status.synced:
            return self._result(resource.name, status, success=True)

        limit = spec.rollback_retries_limit
        if retries_exhausted(limit, status.failed):
            self.log.warning(
                "%s: rollback retries limit (%d) exceeded", resource.name, limit
            )
            status = status.model_copy(update={"state": ResourceState.FAILED})
            return self._result(
                resource.name,
                status,
                success=False,
                error=status.error or f"rollback retries limit {limit} exceeded",
            )

        if dry_run:
            self.log.info(
                "%s: [dry run] would send %s %s", resource.name, spec.method, spec.url
            )
            return self._result(
                resource.name, status, action=Action.CREATE, success=True
            )

        snapshot = RequestSnapshot(
            action=Action.CREATE,
            method=spec.method,
            url=spec.url,
            body=spec.body.strip(),
            headers=spec.headers or {},
        )

        try:
            ok, reason = validate_url(spec.url)
            if not ok:
                raise RequestValidationError(reason)
            sent = self.client.send(
                spec.method,
                spec.url,
                spec.body,
                spec.headers or {},
                skip_tls_verify=spec.insecure_skip_tls_verify,
                timeout=spec.wait_timeout,
            )
        except ReconcilerError as exc:
            return self._failure(resource.name, status, str(exc), snapshot)

        response = to_response(sent)
        status = status.model_copy(
            update={"response": response, "request_details": snapshot}
        )

        if is_http_error(response.status_code):
            return self._failure(
                resource.name,
                status,
                f"{spec.method} {spec.url} returned HTTP {response.status_code}",
                snapshot,
            )

        if spec.expected_response:
            try:
                matched = matches_expected_response(spec.expected_response, response)
            except ReconcilerError as exc:
                return self._failure(resource.name, status, str(exc), snapshot)
            if not matched:
                return self._failure(
                    resource.name,
                    status,
                    f"response does not match expected response "
                    f"{spec.expected_response!r}",
                    snapshot,
                )

        self.log.info(
            "%s: disposable request succeeded (HTTP %d)",
            resource.name,
            response.status_code,
        )
        status = status.model_copy(
            update={
                "state": ResourceState.SYNCED,
                "synced": True,
                "failed": 0,
                "error": "",
            }
        )
        return self._result(
            resource.name, status, action=Action.CREATE, success=True
        )

    def _failure(
        self,
        name: str,
        status: DisposableStatus,
        message: str,
        snapshot: RequestSnapshot,
    ) -> ReconcileResult:
        self.log.error("%s: %s", name, message)
        status = status.model_copy(
            update={
                "state": ResourceState.FAILED,
                "synced": False,
                "failed": status.failed + 1,
                "error": message,
                "request_details": snapshot,
            }
        )
        return self._result(
            name, status, action=Action.CREATE, success=False, error=message
        )

    @staticmethod
    def _result(
        name: str,
        status: DisposableStatus,
        success: bool,
        action: Action | None = None,
        error: str | None = None,
    ) -> ReconcileResult:
        state = status.state
        if status.synced:
            state = ResourceState.SYNCED
        return ReconcileResult(
            name=name,
            kind="disposable",
            state=state,
            action=action,
            success=success,
            error=error or None,
            status=status,
        )
