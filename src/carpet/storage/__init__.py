"""
Parquet storage layer for carpet.

Provides the components of a bundle:

- Writer: per-bucket buffering and Parquet segment encoding (BucketWriter)
- Index: sorted CID -> (bucket, segment, row) table, plus the bundle manifest
- Reader: random-access rehydration of single blocks and bucket scans
"""

from .index import BucketInfo, Index, IndexEntry, Manifest, SegmentInfo, write_index
from .reader import BundleReader, as_cid
from .writer import BucketWriter, FlushJob, WriteSummary, write_segment

__all__ = [
    "BucketInfo",
    "BucketWriter",
    "BundleReader",
    "FlushJob",
    "Index",
    "IndexEntry",
    "Manifest",
    "SegmentInfo",
    "WriteSummary",
    "as_cid",
    "write_index",
    "write_segment",
]
