"""
Bucketed Parquet writer.

Rows are buffered per bucket. When a buffer reaches the configured row count
or byte size it is handed off as a FlushJob, which encodes the rows into a new
immutable segment file:

    out_dir/buckets/<bucket-id>/seg_0000.parquet
    out_dir/buckets/<bucket-id>/seg_0001.parquet
    ...

LOCKING
=======

Each bucket has two locks:

- ``lock`` guards its buffer, segment counter and finalized segment list.
  Appends to different buckets never contend.
- ``finalize_lock`` is held while a segment of the bucket is being encoded,
  so at most one finalize per bucket is in flight. Different buckets encode
  in parallel.

Segment numbers are assigned when a job is handed off, under ``lock``, so the
layout does not depend on which worker finishes first.

FAILURES
========

An encoder failure fails the whole bucket (EncodeError): its segments are
removed, its index entries dropped, and later rows for it are discarded.
Other buckets are unaffected. The failure is recorded in the manifest.

The index and manifest are written last, by close() or abort().
"""

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pyarrow as pa
import pyarrow.parquet as pq

from carpet.config import DEFAULT_CONFIG, IngestConfig
from carpet.constants import BUCKETS_DIR, INDEX_FILE, MANIFEST_FILE, SEGMENT_FILE_TEMPLATE
from carpet.errors import EncodeError
from carpet.schema.projector import ProjectedRow, bucket_schema
from carpet.schema.types import BaseType
from carpet.storage.index import BucketInfo, IndexEntry, Manifest, SegmentInfo, write_index

logger = logging.getLogger(__name__)

Encoder = Callable[[pa.Table, Path, IngestConfig], None]


def write_segment(table: pa.Table, path: Path, config: IngestConfig) -> None:
    """Default encoder: one Parquet file per segment."""
    pq.write_table(
        table,
        path,
        row_group_size=config.row_group_size,
        compression=config.compression,
    )


@dataclass
class FlushJob:
    """A full buffer handed off for encoding."""

    bucket_id: str
    segment: int
    rows: List[ProjectedRow]


@dataclass
class WriteSummary:
    """Outcome of a writer run."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    rows: int = 0
    segments: int = 0
    complete: bool = True


class _BucketState:
    def __init__(self, bucket_id: str, signature: Optional[BaseType]):
        self.bucket_id = bucket_id
        self.signature = signature
        self.lock = threading.Lock()
        self.finalize_lock = threading.Lock()
        self.rows: List[ProjectedRow] = []
        self.nbytes = 0
        self.next_segment = 0
        self.segments: Dict[int, SegmentInfo] = {}
        self.entries: List[IndexEntry] = []
        self.error: Optional[EncodeError] = None
        self.dropped = 0


class BucketWriter:
    """
    Buffers projected rows per bucket and writes them as Parquet segments.

    Example:
        >>> writer = BucketWriter("out")
        >>> for row in rows:
        ...     job = writer.append(row)
        ...     if job is not None:
        ...         writer.run_flush(job)
        >>> summary = writer.close()
    """

    def __init__(
        self,
        out_dir: Union[str, Path],
        config: IngestConfig = DEFAULT_CONFIG,
        encoder: Optional[Encoder] = None,
    ):
        """
        Args:
            out_dir: Bundle directory; created if missing, must not hold a bundle
            config: Flush thresholds and Parquet settings
            encoder: Segment encoder, defaults to write_segment()

        Raises:
            FileExistsError: If out_dir already contains a bundle
        """
        self.out_dir = Path(out_dir)
        if (self.out_dir / MANIFEST_FILE).exists():
            raise FileExistsError(f"Bundle already exists: {self.out_dir}")
        self.out_dir.mkdir(parents=True, exist_ok=True)

        self.config = config
        self._encoder = encoder or write_segment
        self._buckets: Dict[str, _BucketState] = {}
        self._create_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once close() or abort() has run."""
        return self._closed

    def _state(self, row: ProjectedRow) -> _BucketState:
        state = self._buckets.get(row.bucket_id)
        if state is None:
            with self._create_lock:
                state = self._buckets.get(row.bucket_id)
                if state is None:
                    state = _BucketState(row.bucket_id, row.signature)
                    self._buckets[row.bucket_id] = state
                    logger.debug("New bucket %s: %s", row.bucket_id, row.signature)
        return state

    def append(self, row: ProjectedRow) -> Optional[FlushJob]:
        """
        Buffer a row.

        Returns:
            A FlushJob when the bucket's buffer reached a flush threshold; the
            caller must pass it to run_flush()
        """
        if self._closed:
            raise RuntimeError("Writer is closed")
        state = self._state(row)
        with state.lock:
            if state.error is not None:
                state.dropped += 1
                return None
            state.rows.append(row)
            state.nbytes += row.size
            if len(state.rows) >= self.config.flush_rows or state.nbytes >= self.config.flush_bytes:
                return self._take(state)
        return None

    def _take(self, state: _BucketState) -> FlushJob:
        # caller holds state.lock
        job = FlushJob(state.bucket_id, state.next_segment, state.rows)
        state.next_segment += 1
        state.rows = []
        state.nbytes = 0
        return job

    def run_flush(self, job: FlushJob) -> Optional[SegmentInfo]:
        """
        Encode a FlushJob into a segment file.

        Never raises for encoder failures: the bucket is marked failed instead.

        Returns:
            The new segment, or None if the bucket failed
        """
        state = self._buckets[job.bucket_id]
        with state.finalize_lock:
            if state.error is not None:
                return None

            relative = f"{BUCKETS_DIR}/{job.bucket_id}/{SEGMENT_FILE_TEMPLATE.format(segment=job.segment)}"
            path = self.out_dir / relative
            try:
                table = pa.Table.from_pylist(
                    [row.to_record() for row in job.rows],
                    schema=bucket_schema(state.signature),
                )
                path.parent.mkdir(parents=True, exist_ok=True)
                self._encoder(table, path, self.config)
            except EncodeError as e:
                self._fail(state, e)
                return None
            except Exception as e:
                # encoders are pluggable; any failure is scoped to this bucket
                self._fail(state, EncodeError(job.bucket_id, f"{type(e).__name__}: {e}"))
                return None

            info = SegmentInfo(job.segment, relative, len(job.rows))
            entries = [
                IndexEntry(bytes(row.cid), job.bucket_id, job.segment, offset)
                for offset, row in enumerate(job.rows)
            ]
            with state.lock:
                state.segments[job.segment] = info
                state.entries.extend(entries)

        logger.info(
            "Finalized segment %d of bucket %s (%d rows)", job.segment, job.bucket_id, len(job.rows)
        )
        return info

    def _fail(self, state: _BucketState, error: EncodeError) -> None:
        # caller holds state.finalize_lock
        logger.error("%s", error)
        with state.lock:
            state.error = error
            state.rows = []
            state.nbytes = 0
            state.segments = {}
            state.entries = []
        shutil.rmtree(self.out_dir / BUCKETS_DIR / state.bucket_id, ignore_errors=True)

    def pending_jobs(self) -> List[FlushJob]:
        """Hand off every non-empty buffer, in bucket id order."""
        jobs = []
        for bucket_id in sorted(self._buckets):
            state = self._buckets[bucket_id]
            with state.lock:
                if state.rows and state.error is None:
                    jobs.append(self._take(state))
        return jobs

    def close(self, stats: Optional[Dict[str, int]] = None, executor=None) -> WriteSummary:
        """
        Flush remaining buffers, then write the index and manifest.

        All jobs returned by append() must have completed before calling this.

        Args:
            stats: Counters recorded in the manifest
            executor: Optional concurrent.futures executor for the final flushes
        """
        jobs = self.pending_jobs()
        if executor is not None:
            list(executor.map(self.run_flush, jobs))
        else:
            for job in jobs:
                self.run_flush(job)
        return self._finalize(complete=True, stats=stats)

    def abort(self, stats: Optional[Dict[str, int]] = None) -> WriteSummary:
        """
        Discard unflushed buffers and persist only finalized segments.

        All jobs returned by append() must have completed before calling this.
        """
        discarded = 0
        for state in self._buckets.values():
            with state.lock:
                discarded += len(state.rows)
                state.rows = []
                state.nbytes = 0
        if discarded:
            logger.warning("Discarded %d buffered rows that were not finalized", discarded)
        return self._finalize(complete=False, stats=stats)

    def _finalize(self, complete: bool, stats: Optional[Dict[str, int]]) -> WriteSummary:
        if self._closed:
            raise RuntimeError("Writer is closed")
        self._closed = True

        manifest = Manifest(stats=dict(stats or {}), complete=complete)
        entries: List[IndexEntry] = []
        summary = WriteSummary(complete=complete)
        for bucket_id in sorted(self._buckets):
            state = self._buckets[bucket_id]
            if state.error is not None:
                manifest.failed[bucket_id] = state.error.reason
                summary.failed[bucket_id] = str(state.error)
                continue
            if not state.segments:
                continue
            segments = [state.segments[n] for n in sorted(state.segments)]
            manifest.buckets[bucket_id] = BucketInfo(bucket_id, state.signature, segments)
            entries.extend(state.entries)
            summary.succeeded.append(bucket_id)
            summary.segments += len(segments)

        summary.rows = write_index(entries, self.out_dir / INDEX_FILE)
        manifest.write(self.out_dir / MANIFEST_FILE)

        logger.info(
            "Wrote bundle %s: %d buckets, %d segments, %d rows, %d failed buckets%s",
            self.out_dir,
            len(summary.succeeded),
            summary.segments,
            summary.rows,
            len(summary.failed),
            "" if complete else " (incomplete)",
        )
        return summary
