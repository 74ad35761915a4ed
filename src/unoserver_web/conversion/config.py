import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


@dataclass(frozen=True)
class PoolConfig:
    """Settings for the converter pool.

    Attributes:
        max_workers: Number of unoserver instances, and the admission queue concurrency.
        timeout: Ceiling in seconds for a single unoconvert attempt.
        starting_port: Port of the first instance; instance i listens on starting_port + i.
        max_skip_restarts: Consecutive busy restart cycles before an instance is force-restarted.
        conversion_retries: Retries after the first failed attempt of a conversion.
        retry_backoff: First backoff delay in seconds; doubles on every retry.
        restart_interval: Seconds between restart cycles.
        warmup_count: Instances started eagerly by ConversionPool.start().
        startup_timeout: How long a unoserver start waits for an early exit before returning.
        unoserver_bin: Executable that runs a LibreOffice listener.
        unoconvert_bin: Executable that performs a conversion against a listener.
    """

    max_workers: int = 8
    timeout: float = 60.0
    starting_port: int = 12345
    max_skip_restarts: int = 3
    conversion_retries: int = 3
    retry_backoff: float = 1.0
    restart_interval: float = 60.0
    warmup_count: int = 2
    startup_timeout: float = 5.0
    unoserver_bin: str = "unoserver"
    unoconvert_bin: str = "unoconvert"

    def __post_init__(self) -> None:
        if self.max_workers < 0:
            raise ValueError("max_workers must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.starting_port <= 0 or self.starting_port + self.max_workers > 65536:
            raise ValueError("starting_port must leave room for every worker below 65536")
        if self.max_skip_restarts < 1:
            raise ValueError("max_skip_restarts must be >= 1")
        if self.conversion_retries < 0:
            raise ValueError("conversion_retries must be >= 0")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff must be >= 0")
        if self.restart_interval <= 0:
            raise ValueError("restart_interval must be > 0")
        if self.warmup_count < 0:
            raise ValueError("warmup_count must be >= 0")
        if self.startup_timeout < 0:
            raise ValueError("startup_timeout must be >= 0")

    @classmethod
    def from_env(cls) -> "PoolConfig":
        defaults = cls()
        return cls(
            max_workers=_env_int("MAX_WORKERS", defaults.max_workers),
            timeout=_env_float("CONVERSION_TIMEOUT_SEC", defaults.timeout),
            starting_port=_env_int("STARTING_PORT", defaults.starting_port),
            max_skip_restarts=_env_int("MAX_SKIP_RESTARTS", defaults.max_skip_restarts),
            conversion_retries=_env_int("CONVERSION_RETRIES", defaults.conversion_retries),
            retry_backoff=_env_float("RETRY_BACKOFF_SEC", defaults.retry_backoff),
            restart_interval=_env_float("RESTART_INTERVAL_SEC", defaults.restart_interval),
            warmup_count=_env_int("WARMUP_INSTANCES", defaults.warmup_count),
            startup_timeout=_env_float("UNOSERVER_STARTUP_TIMEOUT_SEC", defaults.startup_timeout),
            unoserver_bin=os.getenv("UNOSERVER_BIN", defaults.unoserver_bin),
            unoconvert_bin=os.getenv("UNOCONVERT_BIN", defaults.unoconvert_bin),
        )
