"""Reconcile scheduler: runs passes over every declared resource.

One pass (``run_once``):

1. Loads each declared resource with its persisted status.
2. Resolves references (``dependsOn`` / ``patchesFrom``) against the
   statuses loaded at the start of the pass.
3. Reconciles resources concurrently in worker threads, bounded by a
   semaphore, each cycle bounded by a deadline derived from the resource
   timeout.
4. Persists each new status as soon as its cycle completes.
5. Returns a ``ReconcileReport``.

A cycle that times out or is cancelled persists nothing; its worker
thread is abandoned and its result discarded.  Per-resource errors never
abort a pass.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from ..config import Config
from ..config_schema import ResourceConfig, UnifiedConfig
from ..core.async_utils import gather_limited, make_semaphore, run_sync
from ..core.client import HttpClient
from ..errors import MappingNotFound, ReconcilerError
from ..templating.compiler import TemplateCompiler
from .disposable import DisposableReconciler
from .engine import ResourceReconciler
from .models import (
    Action,
    DisposableResource,
    HttpResource,
    ReconcileReport,
    ReconcileResult,
    RequestDetails,
    ResourceState,
)
from .patch import resolve_references
from .requestgen import RequestGenerator
from .state import ResourceStore

logger = logging.getLogger(__name__)

AnyResource = Union[HttpResource, DisposableResource]

# Requests per cycle: one GET plus at most one CREATE/UPDATE.
_REQUESTS_PER_CYCLE = 2


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _kind(resource: AnyResource) -> str:
    return "disposable" if isinstance(resource, DisposableResource) else "request"


def _failed_result(resource: AnyResource, error: str) -> ReconcileResult:
    """A failed result that carries no status, so nothing is persisted."""
    return ReconcileResult(
        name=resource.name,
        kind=_kind(resource),
        state=resource.status.state,
        success=False,
        error=error,
    )


class ReconcileScheduler:
    """Reconcile all declared resources, once or in a loop.

    Args:
        unified: Parsed configuration (resources and template settings).
        config: Runtime settings (state dir, interval, concurrency).
        client: Transport; defaults to an ``HttpClient`` using the
            configured default timeout.
        store: Status store; defaults to one in ``config.state_dir``.
        log: Logger to use instead of the module logger.
    """

    def __init__(
        self,
        unified: UnifiedConfig,
        config: Config,
        client: HttpClient | None = None,
        store: ResourceStore | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.unified = unified
        self.config = config
        self.log = log or logger
        self.client = client or HttpClient(
            timeout=config.default_timeout, log=self.log
        )
        self.store = store or ResourceStore(Path(config.state_dir))

        compiler = TemplateCompiler(
            sigil=unified.reconciler.sigil, escape=unified.reconciler.escape
        )
        self.generator = RequestGenerator(compiler=compiler, log=self.log)
        self.requests = ResourceReconciler(
            self.client, log=self.log, generator=self.generator
        )
        self.disposables = DisposableReconciler(self.client, log=self.log)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, declared: ResourceConfig) -> AnyResource:
        """Build *declared* with its persisted status.

        Raises:
            ValidationError: The declaration is invalid.
        """
        status = self.store.load(declared.name, declared.kind)
        return declared.to_resource(status)

    def load_all(
        self, names: list[str] | None = None
    ) -> tuple[dict[str, AnyResource], list[ReconcileResult]]:
        """Load declared resources.

        Args:
            names: Restrict to these names (all declared when ``None``).

        Returns:
            ``(resources, errors)`` where *errors* holds one failed result
            per invalid declaration or unknown name.
        """
        wanted = set(names) if names else None
        resources: dict[str, AnyResource] = {}
        errors: list[ReconcileResult] = []

        if wanted:
            declared_names = {r.name for r in self.unified.resources}
            for name in sorted(wanted - declared_names):
                errors.append(
                    ReconcileResult(
                        name=name,
                        state=ResourceState.UNKNOWN,
                        success=False,
                        error=f"resource {name!r} is not declared",
                    )
                )

        for declared in self.unified.resources:
            try:
                resources[declared.name] = self.load(declared)
            except ValidationError as exc:
                self.log.error("Invalid resource %s: %s", declared.name, exc)
                if wanted is None or declared.name in wanted:
                    errors.append(
                        ReconcileResult(
                            name=declared.name,
                            kind=declared.kind,
                            state=ResourceState.UNKNOWN,
                            success=False,
                            error=f"invalid resource: {exc}",
                        )
                    )
        return resources, errors

    # ------------------------------------------------------------------
    # Single resource
    # ------------------------------------------------------------------

    def reconcile_one(
        self,
        resource: AnyResource,
        sources: dict[str, AnyResource],
        dry_run: bool = False,
    ) -> ReconcileResult:
        """Resolve references and run one cycle (blocking)."""
        try:
            resolved = resolve_references(resource, sources)
        except (ReconcilerError, ValidationError) as exc:
            self.log.warning("%s: references not resolved: %s", resource.name, exc)
            return _failed_result(resource, str(exc))

        if isinstance(resolved, DisposableResource):
            return self.disposables.reconcile(resolved, dry_run=dry_run)
        return self.requests.reconcile(resolved, dry_run=dry_run)

    def _deadline(self, resource: AnyResource) -> float:
        timeout = resource.spec.wait_timeout or self.config.default_timeout
        return timeout * _REQUESTS_PER_CYCLE

    async def _reconcile_bounded(
        self,
        resource: AnyResource,
        sources: dict[str, AnyResource],
        dry_run: bool,
        semaphore: asyncio.Semaphore,
    ) -> ReconcileResult:
        deadline = self._deadline(resource)
        async with semaphore:
            try:
                result = await asyncio.wait_for(
                    run_sync(self.reconcile_one, resource, sources, dry_run),
                    timeout=deadline,
                )
            except asyncio.TimeoutError:
                self.log.error(
                    "%s: reconcile timed out after %.1fs", resource.name, deadline
                )
                return _failed_result(
                    resource, f"reconcile timed out after {deadline:g}s"
                )
            except Exception as exc:
                self.log.error(
                    "%s: reconcile failed unexpectedly: %s: %s",
                    resource.name,
                    type(exc).__name__,
                    exc,
                )
                return _failed_result(
                    resource, f"unexpected error: {type(exc).__name__}: {exc}"
                )

        if result.status is not None and not dry_run:
            self.store.save(result.name, result.status, result.kind)
        return result

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_once(
        self, names: list[str] | None = None, dry_run: bool | None = None
    ) -> ReconcileReport:
        """Run one reconcile pass.

        Args:
            names: Restrict the pass to these resources.
            dry_run: Observe only; defaults to ``config.dry_run``.
                Nothing is persisted in a dry run.

        Returns:
            A ``ReconcileReport`` for the pass.
        """
        if dry_run is None:
            dry_run = self.config.dry_run
        started_at = _now()

        resources, results = self.load_all(names)
        selected = [
            resource
            for name, resource in resources.items()
            if not names or name in names
        ]

        semaphore = make_semaphore(self.config.max_parallel_reconciles)
        results.extend(
            await gather_limited(
                [
                    self._reconcile_bounded(resource, resources, dry_run, semaphore)
                    for resource in selected
                ]
            )
        )

        report = ReconcileReport(
            dry_run=dry_run,
            results=results,
            started_at=started_at,
            completed_at=_now(),
        )
        self.log.info(
            "Reconcile pass done: %d resources, %d errors",
            len(report.results),
            len(report.errors),
        )
        return report

    async def run_forever(
        self,
        stop_event: asyncio.Event | None = None,
        max_passes: int | None = None,
    ) -> list[ReconcileReport]:
        """Run passes every ``config.poll_interval`` seconds.

        Args:
            stop_event: Set to stop after the current pass.
            max_passes: Stop after this many passes.

        Returns:
            The reports of all completed passes.
        """
        stop_event = stop_event or asyncio.Event()
        reports: list[ReconcileReport] = []
        while not stop_event.is_set():
            reports.append(await self.run_once())
            if max_passes is not None and len(reports) >= max_passes:
                break
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.config.poll_interval
                )
            except asyncio.TimeoutError:
                continue
        return reports

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def _require(self, name: str) -> tuple[ResourceConfig, AnyResource]:
        declared = self.unified.resource(name)
        if declared is None:
            raise ReconcilerError(f"resource {name!r} is not declared")
        return declared, self.load(declared)

    def render(self, name: str, action: Action) -> RequestDetails:
        """Render the request *action* would send for *name*, without sending.

        Raises:
            ReconcilerError: *name* is not declared, or the request cannot
                be rendered.
        """
        _, resource = self._require(name)
        if isinstance(resource, DisposableResource):
            spec = resource.spec
            return RequestDetails(
                url=spec.url, body=spec.body, headers=spec.headers or {}
            )
        resources, _ = self.load_all()
        resolved = resolve_references(resource, resources)
        mapping = resolved.spec.mappings.for_action(action)
        if mapping is None:
            raise MappingNotFound(action.value)
        return self.generator.generate_valid(
            mapping, resolved.spec, resolved.status.response, action
        )

    def delete(self, name: str) -> ReconcileResult:
        """Delete *name* and forget its state on success.

        Disposable requests have nothing to delete remotely; only their
        state is removed.

        References are resolved first, so a DELETE mapping may use values
        patched in from other resources.

        Raises:
            ReconcilerError: *name* is not declared, or its references
                cannot be resolved.
        """
        declared, resource = self._require(name)
        if isinstance(resource, DisposableResource):
            self.store.delete(name, declared.kind)
            return ReconcileResult(
                name=name,
                kind=declared.kind,
                state=ResourceState.ABSENT,
                action=Action.DELETE,
                success=True,
            )

        resources, _ = self.load_all()
        result = self.requests.delete(resolve_references(resource, resources))
        if result.success:
            self.store.delete(name, declared.kind)
        elif result.status is not None:
            self.store.save(name, result.status, declared.kind)
        return result
