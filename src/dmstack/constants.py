"""Constants for dmstack configuration and limits."""

from typing import Final

# ============================================================================
# Geometry
# ============================================================================

SECTOR_SIZE: Final[int] = 512
"""Bytes per sector. All sizes inside the harness are expressed in sectors."""

CACHE_WIPE_SECTORS: Final[int] = 2048
"""Sectors zeroed at the head of the cache device before a fresh writeboost
instance is created (1 MiB covers the superblock and the first segment)."""

# ============================================================================
# Pacing and waits
# ============================================================================

DEFAULT_PACE_SECONDS: Final[float] = 1.0
"""Minimum wall-clock time between consecutive state-changing mutations."""

DEFAULT_COMMAND_TIMEOUT_SECONDS: Final[float] = 60.0
"""Timeout for control-plane commands (dmsetup)."""

DEFAULT_DRAIN_TIMEOUT_SECONDS: Final[float] = 300.0
"""How long wait_for_clean() polls for dirty blocks to reach zero."""

DRAIN_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Interval between status reads while waiting for write-back to drain."""

UNMAP_MAX_RETRIES: Final[int] = 5
"""Attempts for dmsetup remove before surfacing DeviceBusyError."""

UNMAP_RETRY_MIN_SECONDS: Final[float] = 0.1
UNMAP_RETRY_MAX_SECONDS: Final[float] = 2.0

TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period after SIGTERM before a timed-out child is killed."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0

# ============================================================================
# Targets
# ============================================================================

DM_DIR: Final[str] = "/dev/mapper"

WRITEBOOST_TARGET: Final[str] = "writeboost"
LINEAR_TARGET: Final[str] = "linear"
FLAKEY_TARGET: Final[str] = "flakey"
ERROR_TARGET: Final[str] = "error"
ZERO_TARGET: Final[str] = "zero"

WRITEBOOST_TUNABLES: Final[tuple[str, ...]] = (
    "writeback_threshold",
    "nr_max_batched_writeback",
    "update_sb_record_interval",
    "sync_data_interval",
    "read_cache_threshold",
)
"""Tunables accepted both in the table and through messages."""

WRITEBOOST_TABLE_ONLY_ARGS: Final[tuple[str, ...]] = (
    "segment_size_order",
    "enable_migration_modulator",
    "allow_migrate",
)
"""Arguments only accepted at table construction time."""

MIN_SYNC_DATA_INTERVAL: Final[int] = 1
"""Shortest background sync interval (seconds) the target accepts."""

MSG_SYNC_DATA_INTERVAL: Final[str] = "sync_data_interval"
MSG_DROP_CACHES: Final[str] = "drop_caches"

STAT_COUNTERS: Final[int] = 16
"""stat(write, hit, on_buffer, fullsize) counters in a writeboost status line."""
