"""Runtime settings for the reconcile loop.

Resolves reconciler settings from CLI args, environment variables, .env
files and the YAML ``reconciler`` section.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    HTTP_RECONCILER_STATE_DIR: State directory (default: .http_reconciler/state)
    HTTP_RECONCILER_POLL_INTERVAL: Seconds between passes (default: 60)
    HTTP_RECONCILER_MAX_PARALLEL: Max concurrent reconciles, 1-100 (default: 5)
    HTTP_RECONCILER_TIMEOUT: Default request timeout in seconds (default: 30)
    HTTP_RECONCILER_DEBUG: Enable debug logging (default: false)
    HTTP_RECONCILER_DRY_RUN: Observe only, never mutate (default: false)
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".http_reconciler/state"


@dataclass
class Config:
    state_dir: str = DEFAULT_STATE_DIR
    poll_interval: float = 60.0
    max_parallel_reconciles: int = 5
    default_timeout: float = 30.0
    debug: bool = False
    dry_run: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If a value is out of range or the state dir is empty.
    """
    config.state_dir = config.state_dir.strip()
    if not config.state_dir:
        raise ValueError(
            "State directory cannot be empty. Set HTTP_RECONCILER_STATE_DIR "
            "or reconciler.state_dir."
        )

    if config.poll_interval <= 0:
        raise ValueError(
            f"Invalid poll interval {config.poll_interval}: must be positive"
        )

    if not (1 <= config.max_parallel_reconciles <= 100):
        raise ValueError(
            f"Invalid max parallel reconciles {config.max_parallel_reconciles}: "
            "must be a number between 1 and 100"
        )

    if config.default_timeout <= 0:
        raise ValueError(
            f"Invalid default timeout {config.default_timeout}: must be positive"
        )

    if config.dry_run:
        logger.warning("Dry run: only GET requests will be sent")


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number_env(key: str, kind: type) -> float | int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"Invalid {key} '{raw}': must be a number") from None


def load_config(
    state_dir: str | None = None,
    poll_interval: float | None = None,
    max_parallel: int | None = None,
    debug: bool = False,
    dry_run: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load runtime settings with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        state_dir: Override the state directory.
        poll_interval: Override seconds between passes.
        max_parallel: Override the concurrency bound.
        debug: Enable debug logging (CLI flag).
        dry_run: Observe only (CLI flag).
        yaml_fallbacks: Values from the YAML ``reconciler`` section.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If an env var is malformed or a value is out of range.
    """
    fb = {k: v for k, v in (yaml_fallbacks or {}).items() if v is not None}

    final_state_dir = (
        state_dir
        or os.getenv("HTTP_RECONCILER_STATE_DIR")
        or fb.get("state_dir")
        or DEFAULT_STATE_DIR
    )

    def pick(cli_value, env_key: str, fb_key: str, kind: type, default):
        if cli_value is not None:
            return kind(cli_value)
        env_value = _get_number_env(env_key, kind)
        if env_value is not None:
            return env_value
        if fb_key in fb:
            return kind(fb[fb_key])
        return default

    final_poll = pick(
        poll_interval, "HTTP_RECONCILER_POLL_INTERVAL", "poll_interval", float, 60.0
    )
    final_parallel = pick(
        max_parallel,
        "HTTP_RECONCILER_MAX_PARALLEL",
        "max_parallel_reconciles",
        int,
        5,
    )
    final_timeout = pick(
        None, "HTTP_RECONCILER_TIMEOUT", "default_timeout", float, 30.0
    )

    def pick_flag(cli_value: bool, env_key: str) -> bool:
        if cli_value:
            return True
        env_value = _get_bool_env(env_key)
        return bool(env_value)

    config = Config(
        state_dir=final_state_dir,
        poll_interval=final_poll,
        max_parallel_reconciles=final_parallel,
        default_timeout=final_timeout,
        debug=pick_flag(debug, "HTTP_RECONCILER_DEBUG"),
        dry_run=pick_flag(dry_run, "HTTP_RECONCILER_DRY_RUN"),
    )

    validate_config(config)

    return config
