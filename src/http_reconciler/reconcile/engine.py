"""Reconciliation state machine for declared HTTP resources.

One ``ResourceReconciler.reconcile`` call runs a full cycle:

1. Rebase the status on the current spec hash (a changed spec resets the
   failure counter).
2. Stop early once the rollback retries limit has been exceeded.
3. Observe: render the GET mapping and fetch the live resource.  A 404 means
   absent; any other status goes to the comparator against the body the
   UPDATE mapping would send.
4. Converge: CREATE when absent, UPDATE when out of sync.
5. Return a new frozen ``ResourceStatus`` inside a ``ReconcileResult``.

Component errors (templating, merge, transport, comparison, validation)
are caught here and only here; they bump ``failed`` and set ``error``
while the last-known-good cache is kept.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from ..core.client import HttpClient, HttpDetails
from ..errors import MappingNotFound, ReconcilerError
from ..validators import is_http_error, is_http_success
from .comparator import (
    compare_response,
    is_valid_for_observation,
    matches_expected_response,
)
from .models import (
    Action,
    Cache,
    DesiredSpec,
    HttpResource,
    Mapping,
    Observation,
    ReconcileResult,
    RequestDetails,
    RequestSnapshot,
    ResourceState,
    ResourceStatus,
    Response,
)
from .requestgen import RequestGenerator

logger = logging.getLogger(__name__)

ERR_OBJECT_NOT_FOUND = "object wasn't found"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format *moment* as an RFC 3339 UTC timestamp (second precision)."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def to_response(details: HttpDetails) -> Response:
    """Convert a transport response into a status record.

    An empty body is recorded as ``{}``.
    """
    return Response(
        status_code=details.response.status_code,
        headers=details.response.headers,
        body=details.response.body or "{}",
    )


def retries_exhausted(limit: int | None, failed: int) -> bool:
    """Return ``True`` once more than *limit* retries have failed.

    The first attempt is not a retry, so a limit of N allows N + 1 sends.
    """
    return limit is not None and failed > limit


class ResourceReconciler:
    """Drive one declared HTTP resource towards its desired state.

    The reconciler never mutates its input: every method returns a new
    status.  It is safe to share across threads as long as the client is.

    Args:
        client: Transport used to send requests.
        log: Logger to use instead of the module logger.
        clock: Returns the current time; used for cache timestamps.
        generator: Request generator (default sigil and escape).
    """

    def __init__(
        self,
        client: HttpClient,
        log: logging.Logger | None = None,
        clock: Callable[[], datetime] | None = None,
        generator: RequestGenerator | None = None,
    ) -> None:
        self.client = client
        self.log = log or logger
        self.clock = clock or utc_now
        self.generator = generator or RequestGenerator(log=self.log)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def reconcile(
        self, resource: HttpResource, dry_run: bool = False
    ) -> ReconcileResult:
        """Run one observe/converge cycle.

        Args:
            resource: The resource with its last persisted status.
            dry_run: If ``True``, observe only; the action that would be
                sent is reported but not executed.

        Returns:
            A ``ReconcileResult`` carrying the new status to persist.
        """
        status = self._rebase(resource.status, resource.spec.spec_hash())
        resource = resource.model_copy(update={"status": status})

        limit = resource.spec.rollback_retries_limit
        if retries_exhausted(limit, status.failed):
            self.log.warning(
                "%s: rollback retries limit (%d) exceeded, not retrying until "
                "the spec changes",
                resource.name,
                limit,
            )
            status = status.model_copy(
                update={"state": ResourceState.FAILED, "synced": False}
            )
            return self._result(
                resource.name,
                status,
                success=False,
                error=status.error or f"rollback retries limit {limit} exceeded",
            )

        observation = self.observe(resource)
        status = self._apply_observation(status, observation)
        self.log.debug("%s: observed %s", resource.name, observation.state.value)

        match observation.state:
            case ResourceState.FAILED:
                return self._result(
                    resource.name, status, success=False, error=status.error
                )
            case ResourceState.ABSENT:
                action = Action.CREATE
            case ResourceState.OUT_OF_SYNC:
                action = Action.UPDATE
            case _:
                return self._result(resource.name, status, success=True)

        if dry_run:
            self.log.info(
                "%s: [dry run] would send %s", resource.name, action.value
            )
            return self._result(resource.name, status, action=action, success=True)

        resource = resource.model_copy(update={"status": status})
        if action == Action.CREATE:
            return self.create(resource)
        return self.update(resource)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, resource: HttpResource) -> Observation:
        """Fetch the live resource and decide whether it is in sync.

        Returns:
            An ``Observation``.  ``ABSENT`` when nothing was ever created
            (or the create failed) and when the GET returns 404.
        """
        spec = resource.spec
        status = resource.status

        if not is_valid_for_observation(status):
            return Observation(state=ResourceState.ABSENT)

        get = spec.mappings.for_action(Action.GET)
        if get is None:
            return Observation(
                state=ResourceState.FAILED,
                error=str(MappingNotFound(Action.GET.value)),
            )

        try:
            details = self.generator.generate_valid(
                get, spec, status.response, Action.GET
            )
            sent = self._send(spec, get, details)
        except ReconcilerError as exc:
            return Observation(state=ResourceState.FAILED, error=str(exc))

        live = sent.response
        if live.status_code == 404:
            return Observation(state=ResourceState.ABSENT)

        response = to_response(sent)
        try:
            synced = self._is_synced(spec, status, live.body, live.status_code)
            if synced and spec.expected_response:
                synced = matches_expected_response(spec.expected_response, response)
        except ReconcilerError as exc:
            return Observation(
                state=ResourceState.FAILED, response=response, error=str(exc)
            )

        return Observation(
            state=ResourceState.SYNCED if synced else ResourceState.OUT_OF_SYNC,
            response=response,
        )

    def _is_synced(
        self,
        spec: DesiredSpec,
        status: ResourceStatus,
        live_body: str,
        live_status: int,
    ) -> bool:
        update = spec.mappings.for_action(Action.UPDATE)
        if update is None:
            return is_http_success(live_status)
        desired = self.generator.generate_valid(
            update, spec, status.response, Action.UPDATE
        )
        return compare_response(live_body, live_status, desired.body)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def create(self, resource: HttpResource) -> ReconcileResult:
        """Send the CREATE request.  Only allowed from the ABSENT state."""
        return self._guarded(resource, Action.CREATE, ResourceState.ABSENT)

    def update(self, resource: HttpResource) -> ReconcileResult:
        """Send the UPDATE request.  Only allowed from the OUT_OF_SYNC state."""
        return self._guarded(resource, Action.UPDATE, ResourceState.OUT_OF_SYNC)

    def delete(self, resource: HttpResource) -> ReconcileResult:
        """Send the DELETE request.

        Deleting a resource that was never created, or getting a 404 back,
        counts as success.
        """
        status = resource.status
        if not is_valid_for_observation(status):
            self.log.info("%s: nothing to delete", resource.name)
            status = status.model_copy(
                update={
                    "state": ResourceState.ABSENT,
                    "synced": False,
                    "failed": 0,
                    "error": "",
                }
            )
            return self._result(
                resource.name, status, action=Action.DELETE, success=True
            )
        return self._perform(resource, Action.DELETE)

    def _guarded(
        self, resource: HttpResource, action: Action, required: ResourceState
    ) -> ReconcileResult:
        if resource.status.state != required:
            return self._result(
                resource.name,
                resource.status,
                action=action,
                success=False,
                error=(
                    f"{action.value} requires state {required.value}, "
                    f"resource is {resource.status.state.value}"
                ),
            )
        return self._perform(resource, action)

    def _perform(self, resource: HttpResource, action: Action) -> ReconcileResult:
        spec = resource.spec
        status = resource.status

        try:
            mapping = spec.mappings.for_action(action)
            if mapping is None:
                raise MappingNotFound(action.value)
            details = self.generator.generate_valid(
                mapping, spec, status.response, action
            )
            sent = self._send(spec, mapping, details)
        except ReconcilerError as exc:
            self.log.error("%s: %s failed: %s", resource.name, action.value, exc)
            status = self._failed(status, str(exc))
            return self._result(
                resource.name, status, action=action, success=False, error=status.error
            )

        response = to_response(sent)
        snapshot = RequestSnapshot(
            action=action,
            method=mapping.method,
            url=details.url,
            body=details.body,
            headers=details.headers,
        )
        code = response.status_code

        if action == Action.DELETE and code == 404:
            code_ok = True
        else:
            code_ok = not is_http_error(code)

        if not code_ok:
            message = f"{action.value} {details.url} returned HTTP {code}"
            self.log.error("%s: %s", resource.name, message)
            status = self._failed(status, message).model_copy(
                update={"response": response, "request_details": snapshot}
            )
            return self._result(
                resource.name, status, action=action, success=False, error=message
            )

        self.log.info(
            "%s: %s succeeded (HTTP %d)", resource.name, action.value, code
        )
        status = status.model_copy(
            update={
                "state": (
                    ResourceState.ABSENT
                    if action == Action.DELETE
                    else ResourceState.OBSERVING
                ),
                "synced": False,
                "failed": 0,
                "error": "",
                "response": response,
                "request_details": snapshot,
                "cache": Cache(
                    last_updated=format_timestamp(self.clock()),
                    response=response,
                ),
            }
        )
        return self._result(resource.name, status, action=action, success=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _send(
        self, spec: DesiredSpec, mapping: Mapping, details: RequestDetails
    ) -> HttpDetails:
        return self.client.send(
            mapping.method,
            details.url,
            details.body,
            details.headers,
            skip_tls_verify=spec.insecure_skip_tls_verify,
            timeout=spec.wait_timeout,
        )

    @staticmethod
    def _rebase(status: ResourceStatus, spec_hash: str) -> ResourceStatus:
        if status.spec_hash == spec_hash:
            return status
        update: dict = {"spec_hash": spec_hash}
        if status.spec_hash:
            # Spec changed: give the new spec a fresh set of retries.
            update.update({"failed": 0, "error": ""})
        return status.model_copy(update=update)

    @staticmethod
    def _failed(status: ResourceStatus, message: str) -> ResourceStatus:
        return status.model_copy(
            update={
                "state": ResourceState.FAILED,
                "synced": False,
                "failed": status.failed + 1,
                "error": message,
            }
        )

    def _apply_observation(
        self, status: ResourceStatus, observation: Observation
    ) -> ResourceStatus:
        match observation.state:
            case ResourceState.FAILED:
                self.log.error("observe failed: %s", observation.error)
                return self._failed(status, observation.error)
            case ResourceState.SYNCED:
                return status.model_copy(
                    update={
                        "state": ResourceState.SYNCED,
                        "synced": True,
                        "failed": 0,
                        "error": "",
                    }
                )
            case _:
                return status.model_copy(
                    update={"state": observation.state, "synced": False}
                )

    @staticmethod
    def _result(
        name: str,
        status: ResourceStatus,
        success: bool,
        action: Action | None = None,
        error: str | None = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            name=name,
            kind="request",
            state=status.state,
            action=action,
            success=success,
            error=error or None,
            status=status,
        )
