"""Reconciliation of declared HTTP resources.

Modules:

- ``models``     -- frozen data contracts (specs, statuses, results).
- ``requestgen`` -- render mappings into request details.
- ``comparator`` -- decide whether the live resource is in sync.
- ``engine``     -- ``ResourceReconciler`` state machine.
- ``disposable`` -- one-shot requests.
- ``patch``      -- field paths and cross-resource references.
- ``state``      -- per-resource status files.
- ``scheduler``  -- concurrent reconcile passes (import it directly).
- ``reporter``   -- report formatting.
"""

from .comparator import compare_response, is_valid_for_observation
from .disposable import DisposableReconciler
from .engine import ResourceReconciler
from .models import (
    Action,
    DesiredSpec,
    DisposableResource,
    DisposableSpec,
    HttpResource,
    Mapping,
    Mappings,
    ReconcileReport,
    ReconcileResult,
    ResourceState,
    ResourceStatus,
    Response,
)
from .requestgen import (
    RequestGenerator,
    generate_request_details,
    generate_valid_request_details,
    is_request_valid,
)
from .state import ResourceStore

__all__ = [
    "Action",
    "DesiredSpec",
    "DisposableReconciler",
    "DisposableResource",
    "DisposableSpec",
    "HttpResource",
    "Mapping",
    "Mappings",
    "ReconcileReport",
    "ReconcileResult",
    "RequestGenerator",
    "ResourceReconciler",
    "ResourceState",
    "ResourceStatus",
    "ResourceStore",
    "Response",
    "compare_response",
    "generate_request_details",
    "generate_valid_request_details",
    "is_request_valid",
    "is_valid_for_observation",
]
