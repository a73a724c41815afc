"""Scanner tunables with validated defaults."""

from dataclasses import dataclass

MAX_RETRIES_LIMIT = 3


@dataclass
class ScannerSettings:
    """
    Engine-wide tunables. DepthOptions carries the per-deep-scan knobs.

    Raises ValueError on construction if any value is out of range.
    """
    probe_timeout: float = 0.2       # Seconds per connect attempt
    max_concurrency: int = 50        # Concurrent connect attempts per probe run
    max_retries: int = 2             # Retries after a transient failure
    retry_base_delay: float = 0.05   # First backoff delay, doubled per retry
    quick_port_cap: int = 100        # Ports probed per quick scan
    banner_port_cap: int = 10        # Open ports banner-grabbed per quick scan
    banner_timeout: float = 2.0
    ping_timeout: float = 2.0
    ping_count: int = 1
    max_concurrent_scans: int = 4
    deep_scan_grace: float = 30.0    # Added to DepthOptions.timeout_seconds
    progress_history: int = 256      # Finished scans kept for get_progress()

    def __post_init__(self):
        if self.probe_timeout <= 0:
            raise ValueError("probe_timeout must be positive")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if not 0 <= self.max_retries <= MAX_RETRIES_LIMIT:
            raise ValueError(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay must not be negative")
        if self.quick_port_cap < 1 or self.banner_port_cap < 0:
            raise ValueError("port caps must be positive")
        if self.banner_timeout <= 0 or self.ping_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.ping_count < 1:
            raise ValueError("ping_count must be at least 1")
        if self.max_concurrent_scans < 1:
            raise ValueError("max_concurrent_scans must be at least 1")
        if self.progress_history < 1:
            raise ValueError("progress_history must be at least 1")
