"""
Ingestion execution and memory planning for carpet.
"""

from carpet.execution.pipeline import IngestReport, ingest
from carpet.execution.planner import (
    DEFAULT_PROFILE,
    MemoryProfile,
    build_ingest_config,
    calculate_flush_trigger,
)

__all__ = [
    "MemoryProfile",
    "DEFAULT_PROFILE",
    "calculate_flush_trigger",
    "build_ingest_config",
    # pipeline.py exports
    "IngestReport",
    "ingest",
]
