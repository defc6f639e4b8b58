"""
Bundle index and manifest.

The index maps every stored CID to the row holding it:

    cid (binary) | bucket (string) | segment (int32) | row (int64)

Records are sorted by CID bytes and persisted as a Parquet table, so a reader
loads the key column once and answers lookups by binary search.

The manifest (manifest.json) describes the bundle: bucket signatures, the
segment files of every bucket with their row counts, buckets whose encoding
failed, and ingest counters. Both files are written once, after every segment
they reference is finalized, and replaced atomically.
"""

import bisect
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

import pyarrow as pa
import pyarrow.parquet as pq

from carpet.constants import FORMAT_VERSION
from carpet.schema.signature import canonical_signature, parse_signature
from carpet.schema.types import BaseType

logger = logging.getLogger(__name__)

INDEX_SCHEMA = pa.schema(
    [
        pa.field("cid", pa.binary(), nullable=False),
        pa.field("bucket", pa.string(), nullable=False),
        pa.field("segment", pa.int32(), nullable=False),
        pa.field("row", pa.int64(), nullable=False),
    ]
)


@dataclass(frozen=True)
class IndexEntry:
    """Location of one block in the bundle."""

    cid: bytes
    bucket: str
    segment: int
    row: int


def _replace_atomically(path: Path, write) -> None:
    tmp = path.with_name(path.name + ".tmp")
    write(tmp)
    os.replace(tmp, path)


def write_index(entries: Iterable[IndexEntry], path: Union[str, Path]) -> int:
    """
    Sort entries by CID and write them as a Parquet table.

    Returns:
        Number of entries written
    """
    ordered = sorted(entries, key=lambda e: e.cid)
    table = pa.table(
        {
            "cid": [e.cid for e in ordered],
            "bucket": [e.bucket for e in ordered],
            "segment": [e.segment for e in ordered],
            "row": [e.row for e in ordered],
        },
        schema=INDEX_SCHEMA,
    )
    _replace_atomically(Path(path), lambda tmp: pq.write_table(table, tmp))
    logger.debug("Wrote index with %d entries to %s", len(ordered), path)
    return len(ordered)


class Index:
    """
    Read-only, in-memory view of an index file.

    Safe to share between threads: nothing is mutated after construction.
    """

    def __init__(self, path: Union[str, Path]):
        table = pq.read_table(path)
        self._keys: List[bytes] = table.column("cid").to_pylist()
        self._buckets: List[str] = table.column("bucket").to_pylist()
        self._segments: List[int] = table.column("segment").to_pylist()
        self._rows: List[int] = table.column("row").to_pylist()

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._keys)

    def __contains__(self, key: bytes) -> bool:
        return self.lookup(key) is not None

    def lookup(self, key: bytes) -> Optional[IndexEntry]:
        i = bisect.bisect_left(self._keys, key)
        if i == len(self._keys) or self._keys[i] != key:
            return None
        return IndexEntry(key, self._buckets[i], self._segments[i], self._rows[i])

    def entries(self) -> Iterator[IndexEntry]:
        for i, key in enumerate(self._keys):
            yield IndexEntry(key, self._buckets[i], self._segments[i], self._rows[i])


# =============================================================================
# MANIFEST
# =============================================================================


@dataclass(frozen=True)
class SegmentInfo:
    """One finalized segment file, path relative to the bundle root."""

    segment: int
    file: str
    rows: int


@dataclass
class BucketInfo:
    bucket_id: str
    signature: Optional[BaseType]
    segments: List[SegmentInfo] = field(default_factory=list)

    @property
    def rows(self) -> int:
        return sum(s.rows for s in self.segments)

    def segment(self, number: int) -> SegmentInfo:
        for info in self.segments:
            if info.segment == number:
                return info
        raise KeyError(f"Bucket '{self.bucket_id}' has no segment {number}")

    def to_dict(self) -> dict:
        return {
            "signature": canonical_signature(self.signature) if self.signature is not None else None,
            "rows": self.rows,
            "segments": [
                {"segment": s.segment, "file": s.file, "rows": s.rows} for s in self.segments
            ],
        }

    @classmethod
    def from_dict(cls, bucket_id: str, data: dict) -> "BucketInfo":
        signature = data.get("signature")
        return cls(
            bucket_id=bucket_id,
            signature=parse_signature(signature) if signature is not None else None,
            segments=[
                SegmentInfo(s["segment"], s["file"], s["rows"]) for s in data.get("segments", [])
            ],
        )


@dataclass
class Manifest:
    buckets: Dict[str, BucketInfo] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    complete: bool = True
    version: int = FORMAT_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "complete": self.complete,
            "buckets": {bid: self.buckets[bid].to_dict() for bid in sorted(self.buckets)},
            "failed": dict(sorted(self.failed.items())),
            "stats": dict(sorted(self.stats.items())),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Manifest":
        version = data.get("version")
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported bundle format version: {version!r}")
        return cls(
            buckets={
                bid: BucketInfo.from_dict(bid, info) for bid, info in data.get("buckets", {}).items()
            },
            failed=dict(data.get("failed", {})),
            stats=dict(data.get("stats", {})),
            complete=bool(data.get("complete", True)),
            version=version,
        )

    def write(self, path: Union[str, Path]) -> None:
        text = json.dumps(self.to_dict(), indent=2, sort_keys=True)
        _replace_atomically(Path(path), lambda tmp: tmp.write_text(text, encoding="utf-8"))

    @classmethod
    def read(cls, path: Union[str, Path]) -> "Manifest":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
