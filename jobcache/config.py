"""
Settings for the job cache layer, read from the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .env import env_bool, env_float, env_int
from .keys import DEFAULT_PREFIX


@dataclass
class TTLTiers:
    """Expiry in seconds per entity class."""

    jobs: int = 7 * 24 * 60 * 60
    results: int = 3 * 24 * 60 * 60
    active_jobs: int = 60 * 60
    temp_data: int = 30 * 60


@dataclass
class CacheSettings:
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    connect_timeout: float = 5.0
    reconnect_attempts: int = 3
    reconnect_base_delay: float = 0.1
    reconnect_max_delay: float = 3.0
    default_ttl: int = 3600
    key_prefix: str = DEFAULT_PREFIX
    max_memory: Optional[str] = "1gb"
    max_memory_policy: Optional[str] = "allkeys-lru"
    disabled: bool = False
    save_local_files: bool = True
    output_dir: Path = Path("results")
    rate_limit_max: int = 100
    rate_limit_window: int = 15 * 60
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 60.0
    ttl: TTLTiers = field(default_factory=TTLTiers)

    @classmethod
    def from_env(cls) -> "CacheSettings":
        """Build settings from environment variables (call load_env() first)."""
        return cls(
            redis_url=os.getenv("REDIS_URL") or None,
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=env_int("REDIS_PORT", 6379),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            redis_db=env_int("REDIS_DB", 0),
            connect_timeout=env_float("REDIS_CONNECT_TIMEOUT", 5.0),
            reconnect_attempts=env_int("REDIS_RECONNECT_ATTEMPTS", 3),
            default_ttl=env_int("REDIS_TTL", 3600),
            key_prefix=os.getenv("REDIS_PREFIX", DEFAULT_PREFIX),
            max_memory=os.getenv("REDIS_MAXMEMORY", "1gb") or None,
            max_memory_policy=os.getenv("REDIS_MAXMEMORY_POLICY", "allkeys-lru") or None,
            disabled=env_bool("DISABLE_REDIS", False),
            save_local_files=env_bool("SAVE_LOCAL_FILES", True),
            output_dir=Path(os.getenv("OUTPUT_DIR", "results")),
            rate_limit_max=env_int("RATE_LIMIT_MAX_REQUESTS", 100),
            rate_limit_window=env_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
            breaker_failure_threshold=env_int("BREAKER_FAILURE_THRESHOLD", 5),
            breaker_recovery_timeout=env_float("BREAKER_RECOVERY_TIMEOUT", 60.0),
        )
