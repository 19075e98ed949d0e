from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_BASE_URL = "https://www.bungie.net/Platform/"


@dataclass(frozen=True, slots=True)
class Settings:
    base_url: str
    api_key: str | None
    membership_type: int
    membership_id: str | None

    http_timeout_seconds: float = 30.0

    # Retry budget for a single remote step.
    throttle_max_wait_seconds: float = 60.0
    max_throttle_retries: int = 5
    max_unavailable_attempts: int = 3
    backoff_base_seconds: float = 1.0

    # Upper bound on how long a crashed attempt can keep a character locked.
    lock_ttl_ms: int = 600_000


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def settings_from_env() -> Settings:
    return Settings(
        base_url=os.environ.get("BUNGIE_BASE_URL", DEFAULT_BASE_URL),
        api_key=os.environ.get("BUNGIE_API_KEY"),
        membership_type=_env_int("BUNGIE_MEMBERSHIP_TYPE", 3),
        membership_id=os.environ.get("BUNGIE_MEMBERSHIP_ID"),
        http_timeout_seconds=_env_float("LOADOUTS_HTTP_TIMEOUT_SECONDS", 30.0),
        throttle_max_wait_seconds=_env_float("LOADOUTS_THROTTLE_MAX_WAIT_SECONDS", 60.0),
        max_throttle_retries=_env_int("LOADOUTS_MAX_THROTTLE_RETRIES", 5),
        max_unavailable_attempts=_env_int("LOADOUTS_MAX_UNAVAILABLE_ATTEMPTS", 3),
        backoff_base_seconds=_env_float("LOADOUTS_BACKOFF_BASE_SECONDS", 1.0),
        lock_ttl_ms=_env_int("LOADOUTS_LOCK_TTL_MS", 600_000),
    )


def env_token_provider(var: str = "BUNGIE_ACCESS_TOKEN") -> Callable[[], str | None]:
    """Token provider reading the current bearer token from the environment.

    Re-read on every call so an external refresher can rotate it in place.
    """

    def _provider() -> str | None:
        return os.environ.get(var) or None

    return _provider
