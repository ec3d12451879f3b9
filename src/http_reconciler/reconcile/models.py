"""Pydantic models for the declarative HTTP resource reconciler.

Defines the data contracts shared across the reconcile modules:

- ``Action``: The lifecycle actions a mapping can be declared for.
- ``Mapping`` / ``Mappings``: Per-action request templates.
- ``DesiredSpec``: The declared desired state of a resource.
- ``Response``, ``RequestDetails``, ``RequestSnapshot``, ``Cache``:
  request/response records.
- ``ResourceState`` / ``ResourceStatus``: Observed state and reconcile
  bookkeeping.
- ``DependsOn`` / ``PatchesFrom`` / ``Reference``: Cross-resource references.
- ``HttpResource``: A named resource (spec + references + status).
- ``DisposableSpec`` / ``DisposableStatus`` / ``DisposableResource``:
  One-shot request variant.
- ``Observation``: What a GET against the live resource revealed.
- ``ReconcileResult`` / ``ReconcileReport``: Outcome of reconcile passes.

All models are frozen (immutable) and serialise with camelCase aliases so
template paths read like the declared documents (``.payload.baseUrl``).
"""

from __future__ import annotations

import hashlib
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..templating.query import to_json

_MODEL_CONFIG = ConfigDict(
    frozen=True,
    populate_by_name=True,
    alias_generator=to_camel,
)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float | None:
    """Parse a duration into seconds.

    Accepts numbers (seconds) and Go-style strings such as ``"30s"``,
    ``"500ms"`` or ``"1m30s"``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        parts = _DURATION_PART.findall(text)
        if parts and "".join(n + u for n, u in parts) == text:
            return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
    raise ValueError(f"invalid duration: {value!r}")


def _check_method(value: Any) -> Any:
    if isinstance(value, str):
        value = value.upper()
        if value not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method: {value}")
    return value


def _normalise_headers(value: Any) -> Any:
    """Accept ``{"X": "v"}`` as shorthand for ``{"X": ["v"]}``."""
    if isinstance(value, dict):
        return {
            k: v if isinstance(v, list) else [v] for k, v in value.items()
        }
    return value


class Action(str, Enum):
    """Lifecycle actions a mapping can be declared for."""

    CREATE = "CREATE"
    GET = "GET"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Mapping(BaseModel):
    """Request template for one action.

    Attributes:
        method: HTTP method.
        url: URL template (usually a pure expression).
        body: Body template (structured or pure expression), may be empty.
        headers: Mapping-specific headers; when set they replace the
            resource default headers entirely.
    """

    method: str
    url: str
    body: str = ""
    headers: dict[str, list[str]] | None = None

    model_config = _MODEL_CONFIG

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return _check_method(value)

    @field_validator("body", mode="before")
    @classmethod
    def _body_text(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return to_json(value)
        return "" if value is None else value

    @field_validator("headers", mode="before")
    @classmethod
    def _headers(cls, value: Any) -> Any:
        return _normalise_headers(value)


class Mappings(BaseModel):
    """Mappings indexed by action.

    Also accepts the list form ``[{"action": "GET", ...}, ...]``, in which
    case an action may appear only once.
    """

    create: Mapping | None = None
    get: Mapping | None = None
    update: Mapping | None = None
    delete: Mapping | None = None

    model_config = _MODEL_CONFIG

    @model_validator(mode="before")
    @classmethod
    def _from_list(cls, data: Any) -> Any:
        if not isinstance(data, list):
            return data
        keyed: dict[str, Any] = {}
        for item in data:
            if not isinstance(item, dict) or "action" not in item:
                raise ValueError("each mapping in list form needs an 'action'")
            entry = dict(item)
            action = Action(str(entry.pop("action")).upper())
            field = action.value.lower()
            if field in keyed:
                raise ValueError(f"duplicate mapping for action {action.value}")
            keyed[field] = entry
        return keyed

    def for_action(self, action: Action) -> Mapping | None:
        """Return the mapping declared for *action*, or ``None``."""
        return getattr(self, Action(action).value.lower())


class Payload(BaseModel):
    """Free-form template inputs, addressable as ``.payload.*``."""

    base_url: str = ""
    body: str | dict[str, Any] | list[Any] = ""

    model_config = _MODEL_CONFIG


class DesiredSpec(BaseModel):
    """Declared desired state of an HTTP-backed resource.

    Attributes:
        mappings: Per-action request templates; ``get`` is required.
        payload: Template inputs.
        headers: Default headers used when a mapping declares none.
        body_object: Override payload merged onto CREATE/UPDATE bodies.
        wait_timeout: Request timeout in seconds (``"30s"`` accepted).
        insecure_skip_tls_verify: Disable certificate validation.
        rollback_retries_limit: Re-attempts allowed after a failure; once
            exceeded the resource is parked as failed until its spec changes.
        expected_response: Optional predicate query evaluated against the
            observed response.
    """

    mappings: Mappings
    payload: Payload = Field(default_factory=Payload)
    headers: dict[str, list[str]] | None = None
    body_object: dict[str, Any] | None = None
    wait_timeout: float | None = None
    insecure_skip_tls_verify: bool = Field(
        default=False, alias="insecureSkipTLSVerify"
    )
    rollback_retries_limit: int | None = Field(default=None, ge=0)
    expected_response: str | None = None

    model_config = _MODEL_CONFIG

    @field_validator("wait_timeout", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> Any:
        return parse_duration(value)

    @field_validator("headers", mode="before")
    @classmethod
    def _headers(cls, value: Any) -> Any:
        return _normalise_headers(value)

    @model_validator(mode="after")
    def _require_get(self) -> DesiredSpec:
        if self.mappings.get is None:
            raise ValueError("a GET mapping is required to observe the resource")
        return self

    def spec_hash(self) -> str:
        """SHA-256 of the canonical JSON form of this spec."""
        canonical = to_json(self.model_dump(mode="json", by_alias=True))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Response(BaseModel):
    """An HTTP response as recorded in the resource status."""

    status_code: int = 0
    headers: dict[str, list[str]] = Field(default_factory=dict)
    body: str = ""

    model_config = _MODEL_CONFIG


class RequestDetails(BaseModel):
    """A rendered request, ready to send."""

    url: str
    body: str = ""
    headers: dict[str, list[str]] = Field(default_factory=dict)

    model_config = _MODEL_CONFIG


class RequestSnapshot(BaseModel):
    """The last request sent for a resource, kept for auditing."""

    action: Action | None = None
    method: str
    url: str
    body: str = ""
    headers: dict[str, list[str]] = Field(default_factory=dict)

    model_config = _MODEL_CONFIG


class Cache(BaseModel):
    """Last known-good response and when it was recorded (RFC 3339, UTC)."""

    last_updated: str
    response: Response

    model_config = _MODEL_CONFIG


class ResourceState(str, Enum):
    """Reconciliation states."""

    UNKNOWN = "unknown"
    OBSERVING = "observing"
    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"
    ABSENT = "absent"
    FAILED = "failed"


class ResourceStatus(BaseModel):
    """Observed state and reconcile bookkeeping of a resource.

    Attributes:
        state: Last state reached by the state machine.
        synced: Whether the last observation matched the desired state.
        failed: Consecutive failure count; reset on success.
        error: Message of the last failure.
        response: Last response received (``None`` if nothing recorded).
        request_details: Snapshot of the last request sent.
        cache: Last successful response with its timestamp.
        spec_hash: Hash of the spec the failure counter refers to.
    """

    state: ResourceState = ResourceState.UNKNOWN
    synced: bool = False
    failed: int = Field(default=0, ge=0)
    error: str = ""
    response: Response | None = None
    request_details: RequestSnapshot | None = None
    cache: Cache | None = None
    spec_hash: str = ""

    model_config = _MODEL_CONFIG


class DependsOn(BaseModel):
    """Dependency on another resource.

    Attributes:
        name: Source resource name.
        field_path: Optional path on the source that decides readiness.
        expected_value: Value expected at ``field_path`` (as text).
    """

    name: str
    field_path: str | None = None
    expected_value: str | None = None

    model_config = _MODEL_CONFIG


class PatchesFrom(BaseModel):
    """Copy a field from another resource.

    Attributes:
        name: Source resource name.
        field_path: Path of the value on the source resource, e.g.
            ``status.response.body``.
    """

    name: str
    field_path: str

    model_config = _MODEL_CONFIG


class Reference(BaseModel):
    """A dependency on, and optionally a field patch from, another resource.

    Attributes:
        depends_on: Resource that must be synced first.
        patches_from: Resource and field to copy from.
        to_field_path: Destination path on this resource; defaults to
            ``patches_from.field_path``.
    """

    depends_on: DependsOn | None = None
    patches_from: PatchesFrom | None = None
    to_field_path: str | None = None

    model_config = _MODEL_CONFIG

    @property
    def source_name(self) -> str | None:
        """Name of the referenced resource."""
        if self.patches_from is not None:
            return self.patches_from.name
        if self.depends_on is not None:
            return self.depends_on.name
        return None


class HttpResource(BaseModel):
    """A declared HTTP resource with its observed status."""

    name: str
    spec: DesiredSpec
    references: list[Reference] = Field(default_factory=list)
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    model_config = _MODEL_CONFIG


# ---------------------------------------------------------------------------
# Disposable (one-shot) requests
# ---------------------------------------------------------------------------


class DisposableSpec(BaseModel):
    """A request sent until it succeeds once, then never again.

    Attributes:
        url: Target URL (literal).
        method: HTTP method.
        headers: Request headers.
        body: Request body (literal).
        wait_timeout: Request timeout in seconds.
        rollback_retries_limit: Re-attempts allowed after a failure.
        insecure_skip_tls_verify: Disable certificate validation.
        expected_response: Predicate query deciding whether the response
            counts as success, e.g. ``.body.job_status == "success"``.
    """

    url: str
    method: str
    headers: dict[str, list[str]] | None = None
    body: str = ""
    wait_timeout: float | None = None
    rollback_retries_limit: int | None = Field(default=None, ge=0)
    insecure_skip_tls_verify: bool = Field(
        default=False, alias="insecureSkipTLSVerify"
    )
    expected_response: str | None = None

    model_config = _MODEL_CONFIG

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return _check_method(value)

    @field_validator("body", mode="before")
    @classmethod
    def _body_text(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return to_json(value)
        return "" if value is None else value

    @field_validator("wait_timeout", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> Any:
        return parse_duration(value)

    @field_validator("headers", mode="before")
    @classmethod
    def _headers(cls, value: Any) -> Any:
        return _normalise_headers(value)

    def spec_hash(self) -> str:
        """SHA-256 of the canonical JSON form of this spec."""
        canonical = to_json(self.model_dump(mode="json", by_alias=True))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class DisposableStatus(BaseModel):
    """Status of a disposable request."""

    state: ResourceState = ResourceState.UNKNOWN
    synced: bool = False
    failed: int = Field(default=0, ge=0)
    error: str = ""
    response: Response | None = None
    request_details: RequestSnapshot | None = None
    spec_hash: str = ""

    model_config = _MODEL_CONFIG


class DisposableResource(BaseModel):
    """A declared one-shot request with its status."""

    name: str
    spec: DisposableSpec
    references: list[Reference] = Field(default_factory=list)
    status: DisposableStatus = Field(default_factory=DisposableStatus)

    model_config = _MODEL_CONFIG


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class Observation(BaseModel):
    """What a GET against the live resource revealed.

    Attributes:
        state: ``SYNCED``, ``OUT_OF_SYNC``, ``ABSENT`` or ``FAILED``.
        response: The live response, if a request was sent.
        error: Failure message when ``state`` is ``FAILED``.
    """

    state: ResourceState
    response: Response | None = None
    error: str = ""

    model_config = _MODEL_CONFIG

    @property
    def synced(self) -> bool:
        return self.state == ResourceState.SYNCED


class ReconcileResult(BaseModel):
    """Outcome of one reconcile cycle for one resource.

    Attributes:
        name: Resource name.
        kind: ``"request"`` or ``"disposable"``.
        state: State reached at the end of the cycle.
        action: Action sent during the cycle, if any.
        success: Whether the cycle ended without error.
        error: Error message if the cycle failed.
        status: The new status to persist.
    """

    name: str
    kind: str = "request"
    state: ResourceState
    action: Action | None = None
    success: bool
    error: str | None = None
    status: ResourceStatus | DisposableStatus | None = None

    model_config = _MODEL_CONFIG


class ReconcileReport(BaseModel):
    """Aggregate report for one scheduler pass.

    Attributes:
        dry_run: Whether requests other than GET were suppressed.
        results: Individual reconcile results.
        started_at: ISO 8601 timestamp when the pass started.
        completed_at: ISO 8601 timestamp when the pass completed.
    """

    dry_run: bool = False
    results: list[ReconcileResult] = Field(default_factory=list)
    started_at: str
    completed_at: str | None = None

    model_config = _MODEL_CONFIG

    def _with_action(self, action: Action) -> list[ReconcileResult]:
        if self.dry_run:
            return []
        return [r for r in self.results if r.action == action and r.success]

    @property
    def planned(self) -> list[ReconcileResult]:
        """Dry run only: results whose action would have been sent."""
        if not self.dry_run:
            return []
        return [r for r in self.results if r.action is not None and r.success]

    @property
    def created(self) -> list[ReconcileResult]:
        """Results where a CREATE succeeded."""
        return self._with_action(Action.CREATE)

    @property
    def updated(self) -> list[ReconcileResult]:
        """Results where an UPDATE succeeded."""
        return self._with_action(Action.UPDATE)

    @property
    def deleted(self) -> list[ReconcileResult]:
        """Results where a DELETE succeeded."""
        return self._with_action(Action.DELETE)

    @property
    def synced(self) -> list[ReconcileResult]:
        """Results that ended in the SYNCED state."""
        return [r for r in self.results if r.state == ResourceState.SYNCED]

    @property
    def errors(self) -> list[ReconcileResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        """Format a short human-readable summary of the pass."""
        lines = [
            "Reconcile report" + (" (dry run)" if self.dry_run else ""),
            f"  Synced:  {len(self.synced)}",
            f"  Created: {len(self.created)}",
            f"  Updated: {len(self.updated)}",
            f"  Deleted: {len(self.deleted)}",
            f"  Errors:  {len(self.errors)}",
            f"  Total:   {len(self.results)}",
        ]
        if self.dry_run:
            lines.insert(2, f"  Planned: {len(self.planned)}")
        return "\n".join(lines)
