"""
carpet: store IPLD blocks in schema-grouped Parquet tables.

Blocks from a CAR archive are grouped by the shape of their decoded value;
each group becomes a Parquet table with one typed column tree per shape. Every
block can be fetched back by CID, byte for byte, without decoding the rest of
the bundle.

Usage:
    from carpet import BundleReader, ingest

    report = ingest("all.car", "out")
    reader = BundleReader("out")
    data = reader.get(cid)
"""

from carpet.config import DEFAULT_CONFIG, IngestConfig
from carpet.errors import (
    CarpetError,
    CorruptArchiveError,
    EncodeError,
    HashMismatchError,
    IntegrityError,
    NotFoundError,
)
from carpet.archive import Block, CarReader, CarWriter
from carpet.schema import ProjectionOverflow, classify, infer_type
from carpet.storage import BucketWriter, BundleReader
from carpet.execution import IngestReport, build_ingest_config, ingest

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Config
    "IngestConfig",
    "DEFAULT_CONFIG",
    "build_ingest_config",
    # Errors
    "CarpetError",
    "CorruptArchiveError",
    "HashMismatchError",
    "EncodeError",
    "NotFoundError",
    "IntegrityError",
    # Archive
    "Block",
    "CarReader",
    "CarWriter",
    # Schema
    "ProjectionOverflow",
    "classify",
    "infer_type",
    # Storage
    "BucketWriter",
    "BundleReader",
    # Pipeline
    "IngestReport",
    "ingest",
]
