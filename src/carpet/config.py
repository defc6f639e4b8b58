"""
Ingestion configuration.

A frozen dataclass validated on construction; build one from a RAM budget
with carpet.execution.planner.build_ingest_config().
"""

import os
from dataclasses import dataclass, field

from carpet.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_COMPRESSION,
    DEFAULT_FLUSH_BYTES,
    DEFAULT_FLUSH_ROWS,
    DEFAULT_ROW_GROUP_SIZE,
)

_COMPRESSIONS = ("none", "snappy", "gzip", "brotli", "lz4", "zstd")


def _default_workers() -> int:
    return min(8, os.cpu_count() or 1)


@dataclass(frozen=True)
class IngestConfig:
    """Thresholds and parallelism for one ingestion run."""

    # A bucket buffer becomes a segment at either limit
    flush_rows: int = DEFAULT_FLUSH_ROWS
    flush_bytes: int = DEFAULT_FLUSH_BYTES

    # Rows per Parquet row group inside a segment
    row_group_size: int = DEFAULT_ROW_GROUP_SIZE

    # Blocks classified/projected per window
    batch_size: int = DEFAULT_BATCH_SIZE

    # Worker threads for projection and segment encoding
    workers: int = field(default_factory=_default_workers)

    compression: str = DEFAULT_COMPRESSION

    def __post_init__(self):
        for name in ("flush_rows", "flush_bytes", "row_group_size", "batch_size", "workers"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.compression not in _COMPRESSIONS:
            raise ValueError(
                f"compression must be one of {', '.join(_COMPRESSIONS)}, got {self.compression!r}"
            )


DEFAULT_CONFIG = IngestConfig()
