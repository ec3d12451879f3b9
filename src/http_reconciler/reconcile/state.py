"""Resource status persistence.

Each declared resource gets its own JSON file in the state directory
(``request_{name}.json`` or ``disposable_{name}.json``) holding the last
status returned by its reconciler.  Writes are atomic: the status is
written to a temp file in the same directory and moved into place with
``os.replace()``, so a crash or a cancelled cycle never leaves a partial
file behind.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .models import DisposableStatus, ResourceStatus

logger = logging.getLogger(__name__)

STATE_VERSION = 1

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_STATUS_TYPES: dict[str, type[ResourceStatus] | type[DisposableStatus]] = {
    "request": ResourceStatus,
    "disposable": DisposableStatus,
}


class ResourceStore:
    """Load and save resource statuses.

    Args:
        state_dir: Directory holding the state files (created on first
            save).
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(
        self, name: str, kind: str = "request"
    ) -> ResourceStatus | DisposableStatus | None:
        """Load the persisted status of *name*.

        Returns:
            The status, or ``None`` if nothing was saved yet or the file
            cannot be read back (a warning is logged; the resource then
            starts from scratch).
        """
        path = self._state_path(name, kind)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
            return _STATUS_TYPES[kind].model_validate(data.get("status", {}))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", path, exc)
            return None

    def save(
        self,
        name: str,
        status: ResourceStatus | DisposableStatus,
        kind: str = "request",
    ) -> Path:
        """Persist *status* for *name* atomically.

        Returns:
            The path of the state file.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        target = self._state_path(name, kind)
        document = {
            "version": STATE_VERSION,
            "name": name,
            "kind": kind,
            "savedAt": datetime.now(timezone.utc).isoformat(),
            "status": status.model_dump(mode="json", by_alias=True),
        }

        fd, tmp_path = tempfile.mkstemp(dir=str(self._state_dir), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Saved state for %s to %s", name, target)
        return target

    def delete(self, name: str, kind: str = "request") -> bool:
        """Remove the state file of *name*.

        Returns:
            ``True`` if a file was removed.
        """
        path = self._state_path(name, kind)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def names(self, kind: str = "request") -> list[str]:
        """Return the names that have a saved status, sorted."""
        if not self._state_dir.is_dir():
            return []
        prefix = f"{kind}_"
        return sorted(
            path.stem[len(prefix) :]
            for path in self._state_dir.glob(f"{prefix}*.json")
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _state_path(self, name: str, kind: str) -> Path:
        if kind not in _STATUS_TYPES:
            raise ValueError(f"unknown resource kind: {kind!r}")
        if not _SAFE_NAME.match(name):
            raise ValueError(f"resource name not usable as a file name: {name!r}")
        return self._state_dir / f"{kind}_{name}.json"
