"""
Flush planning for carpet ingestion.

================================================================================
MEMORY MODEL
================================================================================

The writer keeps one buffer per open bucket. A buffered row holds the decoded
IPLD value (Python dicts, lists, str, ...) plus its projected column values,
which take several times the size of the block bytes. Key concepts:

1. EXPANSION FACTOR
   A buffered row costs roughly ``memory_multiplier`` times its block size.
   Decoded Python containers dominate; the Arrow table built at flush time
   briefly doubles the buffer again.

2. BUFFER MANAGEMENT
   Each bucket flushes to a new segment when its buffered block bytes reach
   ``flush_bytes`` or its row count reaches ``flush_rows``.

3. MEMORY FORMULA
   Given a RAM budget and the number of buckets expected to be buffering at
   the same time:

     available_ram   = peak_ram_limit_mb - baseline_mb
     effective_ram   = available_ram / retention_factor
     bucket_ram      = effective_ram / open_buckets
     flush_bytes     = bucket_ram / memory_multiplier
     flush_rows      = flush_bytes / avg_block_size_bytes

================================================================================
"""

import logging
from dataclasses import dataclass, replace

from carpet.config import DEFAULT_CONFIG, IngestConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryProfile:
    """Memory constants for planning flush thresholds."""

    # Baseline memory before any data processing
    baseline_mb: int

    # Buffered row size relative to its block bytes
    memory_multiplier: float

    # Memory retention factor (Python GC holds onto freed memory)
    retention_factor: float

    # Description for logging
    description: str


DEFAULT_PROFILE = MemoryProfile(
    baseline_mb=150,  # pyarrow + pandas + polars imports
    memory_multiplier=8.0,  # decoded dicts/lists + projected values + Arrow table at flush
    retention_factor=1.25,
    description="CPython, threaded ingestion",
)

# Below this, per-segment Parquet overhead dominates
MIN_FLUSH_ROWS = 256


def calculate_flush_trigger(
    peak_ram_limit_mb: int,
    open_buckets: int,
    avg_block_size_bytes: int,
    profile: MemoryProfile = DEFAULT_PROFILE,
) -> tuple[int, int]:
    """
    Calculate flush thresholds from a memory budget.

    Args:
        peak_ram_limit_mb: Total RAM budget
        open_buckets: Number of buckets expected to buffer rows at once
        avg_block_size_bytes: Average block size in the archive
        profile: Memory constants

    Returns:
        Tuple of (flush_bytes, flush_rows)

    Example:
        >>> calculate_flush_trigger(1024, 16, 512)
        (5727846, 11187)
    """
    if open_buckets < 1:
        raise ValueError(f"open_buckets must be at least 1, got {open_buckets}")
    if avg_block_size_bytes < 1:
        raise ValueError(f"avg_block_size_bytes must be at least 1, got {avg_block_size_bytes}")

    available_ram_mb = peak_ram_limit_mb - profile.baseline_mb
    if available_ram_mb <= 0:
        raise ValueError(
            f"peak_ram_limit_mb ({peak_ram_limit_mb} MB) must be greater than "
            f"baseline ({profile.baseline_mb} MB). "
            f"Minimum viable: {profile.baseline_mb + 50} MB."
        )

    effective_ram_mb = available_ram_mb / profile.retention_factor

    # At least 1 MB per bucket
    bucket_ram_mb = max(effective_ram_mb / open_buckets, 1)

    flush_bytes = int(bucket_ram_mb * 1024 * 1024 / profile.memory_multiplier)
    flush_rows = max(MIN_FLUSH_ROWS, flush_bytes // avg_block_size_bytes)

    return flush_bytes, flush_rows


def build_ingest_config(
    peak_ram_limit_mb: int,
    open_buckets: int,
    avg_block_size_bytes: int,
    base: IngestConfig = DEFAULT_CONFIG,
    profile: MemoryProfile = DEFAULT_PROFILE,
) -> IngestConfig:
    """Derive an IngestConfig whose flush thresholds fit the RAM budget."""
    flush_bytes, flush_rows = calculate_flush_trigger(
        peak_ram_limit_mb, open_buckets, avg_block_size_bytes, profile
    )
    logger.info(
        "Flush plan (%s): %d buckets x %.1f MB, flush at %d rows",
        profile.description,
        open_buckets,
        flush_bytes / (1024 * 1024),
        flush_rows,
    )
    return replace(
        base,
        flush_bytes=flush_bytes,
        flush_rows=flush_rows,
        row_group_size=min(base.row_group_size, flush_rows),
    )
