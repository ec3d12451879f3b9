"""Unified configuration schema for http_reconciler.

Defines Pydantic models for the config file: reconciler settings, logging
and the declared resources.  Every section has defaults, so an empty file
(or no file at all) is a valid configuration with nothing to reconcile.

Usage:
    from http_reconciler.config_loader import load_hierarchical_config
    from http_reconciler.config_schema import build_config

    unified = build_config(load_hierarchical_config())
    for resource in unified.resources:
        ...
"""

from __future__ import annotations

import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .reconcile.models import (
    DisposableResource,
    DisposableStatus,
    HttpResource,
    ResourceStatus,
    parse_duration,
)

logger = logging.getLogger(__name__)

_RESOURCE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ReconcilerSettings(BaseModel):
    """Reconcile loop settings.

    All fields are optional: env vars and CLI args can supply them at
    runtime instead.
    """

    state_dir: str | None = Field(
        default=None, description="Directory holding per-resource state files"
    )
    poll_interval: float | None = Field(
        default=None, gt=0, description="Seconds between reconcile passes"
    )
    max_parallel_reconciles: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Maximum resources reconciled concurrently (1-100)",
    )
    default_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Request timeout when a resource declares no waitTimeout",
    )
    sigil: str = Field(default=".", min_length=1, description="Expression sigil")
    escape: str = Field(default="\\", min_length=1, description="Literal escape")

    model_config = {"frozen": True}

    @field_validator("poll_interval", "default_timeout", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> Any:
        return parse_duration(value)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(default="text")

    model_config = {"frozen": True}


class ResourceConfig(BaseModel):
    """One declared resource.

    ``spec`` and ``references`` are kept raw here and validated by
    ``to_resource()``, so a broken resource can be reported by name.
    """

    name: str
    kind: Literal["request", "disposable"] = "request"
    spec: dict[str, Any]
    references: list[dict[str, Any]] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        if not _RESOURCE_NAME.match(value):
            raise ValueError(
                f"invalid resource name {value!r}: use letters, digits, '.', '_' or '-'"
            )
        return value

    def to_resource(
        self, status: ResourceStatus | DisposableStatus | None = None
    ) -> HttpResource | DisposableResource:
        """Build the validated resource model, attaching *status* if given."""
        data: dict[str, Any] = {
            "name": self.name,
            "spec": self.spec,
            "references": self.references,
        }
        if status is not None:
            data["status"] = status
        if self.kind == "disposable":
            return DisposableResource.model_validate(data)
        return HttpResource.model_validate(data)


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    ``UnifiedConfig()`` (zero-config) is always valid.
    """

    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    resources: list[ResourceConfig] = Field(default_factory=list)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _unique_names(self) -> UnifiedConfig:
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"duplicate resource name {resource.name!r}")
            seen.add(resource.name)
        return self

    def resource(self, name: str) -> ResourceConfig | None:
        """Return the resource declared as *name*, or ``None``."""
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults; ``reconciler: null`` style empty
    sections are treated as absent.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    cleaned = {k: v for k, v in raw_data.items() if v is not None}
    return UnifiedConfig(**cleaned)
