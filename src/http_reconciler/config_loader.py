"""
Hierarchical configuration loader for http_reconciler.

Provides convention-based config file discovery, YAML !include support,
env var interpolation, and hierarchical merge with "project wins" semantics.
Resource declarations are usually kept in separate files and pulled in
with ``!include``.

Usage:
    from http_reconciler.config_loader import load_hierarchical_config

    config = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "HTTP_RECONCILER_CONFIG"
PROJECT_DIR = ".http_reconciler"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` is replaced with ``os.environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * Literal ``${`` with no closing ``}`` is left untouched.

    Secrets such as API tokens in resource headers are typically supplied
    this way: ``Authorization: "Bearer ${API_TOKEN}"``.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        default = match.group(2)
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support (dedicated SafeLoader subclass)
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """YAML SafeLoader subclass with ``!include`` support.

    The global ``yaml.SafeLoader`` is never modified.  Each load carries an
    include stack used to detect circular includes.
    """


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Handle ``!include path/to/file.yml`` directives."""
    include_path_str: str = loader.construct_scalar(node)

    # Relative paths resolve against the including file
    if os.path.isabs(include_path_str):
        include_path = Path(include_path_str)
    else:
        include_path = Path(loader.name).resolve().parent / include_path_str
    include_path = include_path.resolve()

    include_stack: list[Path] = getattr(loader, "_include_stack", [])
    if include_path in include_stack:
        chain = " -> ".join(str(p) for p in include_stack) + f" -> {include_path}"
        raise ValueError(f"Circular include detected: {chain}")

    if not include_path.exists():
        raise FileNotFoundError(
            f"Include file not found: {include_path} "
            f"(referenced from {Path(loader.name).resolve()})"
        )

    return load_yaml_file(include_path, _include_stack=include_stack + [include_path])


ConfigLoader.add_constructor("!include", _include_constructor)


def load_yaml_file(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    """Load one YAML file with ``!include`` support (no interpolation)."""
    path = Path(path).resolve()
    if _include_stack is None:
        _include_stack = [path]

    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# 3. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``HTTP_RECONCILER_CONFIG`` env var (explicit single path)
        2. ``.http_reconciler/config.yml`` in CWD (project-level)
        3. ``.http_reconciler/config.yaml`` in CWD (alternate extension)
        4. ``~/.config/http_reconciler/config.yml`` (XDG global)

    Only paths that exist on disk are returned.
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    cwd = Path.cwd()
    candidates.append(cwd / PROJECT_DIR / "config.yml")
    candidates.append(cwd / PROJECT_DIR / "config.yaml")

    candidates.append(Path.home() / ".config" / "http_reconciler" / "config.yml")

    return [p for p in candidates if p.exists()]


# ---------------------------------------------------------------------------
# 3a. Config bootstrapping
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# http-reconciler configuration
#
# Reconciler settings can also be set via environment variables:
#   HTTP_RECONCILER_STATE_DIR, HTTP_RECONCILER_POLL_INTERVAL,
#   HTTP_RECONCILER_MAX_PARALLEL, HTTP_RECONCILER_TIMEOUT
#
# reconciler:
#   state_dir: .http_reconciler/state
#   poll_interval: 60s
#   max_parallel_reconciles: 5
#   default_timeout: 30s
#
# logging:
#   level: INFO
#   file: null
#   format: text
#
# resources:
#   - name: demo-user
#     spec:
#       payload:
#         baseUrl: https://api.example.com/users
#         body:
#           username: mock-user
#       headers:
#         Content-Type: [application/json]
#         Authorization: ["Bearer ${API_TOKEN}"]
#       mappings:
#         - action: CREATE
#           method: POST
#           url: .payload.baseUrl
#           body: '{"username": ".payload.body.username"}'
#         - action: GET
#           method: GET
#           url: (.payload.baseUrl + "/" + (.response.body.id | tostring))
#         - action: UPDATE
#           method: PUT
#           url: (.payload.baseUrl + "/" + (.response.body.id | tostring))
#           body: '{"username": ".payload.body.username"}'
#         - action: DELETE
#           method: DELETE
#           url: (.payload.baseUrl + "/" + (.response.body.id | tostring))
#
# Long resource lists can live in their own file:
#   resources: !include resources.yml
"""


def resolve_config_path() -> Path:
    """Return the single config file path that should be used.

    The highest-precedence existing file, or the default project-level
    path ``CWD / .http_reconciler / config.yml``.  Nothing is created.
    """
    existing = discover_config_files()
    if existing:
        return existing[0]
    return Path.cwd() / PROJECT_DIR / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Ensure a config file exists, creating directory and starter file if needed.

    Args:
        target: Explicit path to create. If ``None``, uses
            ``resolve_config_path()``.

    Returns:
        Path to the config file (existing or newly created).
    """
    existing = discover_config_files()
    if existing and target is None:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or resolve_config_path()
    if config_path.exists():
        logger.debug("Config file already exists: %s", config_path)
        return config_path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config(paths: list[Path] | None = None) -> dict[str, Any]:
    """Load and merge config files.

    Merge strategy ("project wins"):
        Files are loaded from lowest precedence to highest.  Each file's
        top-level keys **replace** (not deep-merge) those from earlier files,
        so a project ``resources`` list replaces the global one entirely.

    After merging, env var interpolation is applied to all string values.

    Args:
        paths: Explicit files, highest precedence first.  Defaults to
            ``discover_config_files()``.

    Returns:
        The merged dict; empty when no config files exist (zero-config).
    """
    if paths is None:
        paths = discover_config_files()

    if not paths:
        logger.debug("No config files found, using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_yaml_file(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
