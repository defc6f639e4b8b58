"""
Ingestion pipeline: CAR archive -> bucketed Parquet bundle.

================================================================================
ARCHITECTURE
================================================================================

    CarReader ---> window of blocks ---> worker pool ---> BucketWriter
    (sequential)   (batch_size)          classify +       append in archive
                                         project          order, flush jobs
                                                          back to the pool

1. The archive is read sequentially in windows of ``batch_size`` blocks.
2. Classification and projection of a window run on a ThreadPoolExecutor;
   results come back in archive order (executor.map), so rows are appended
   in the same order on every run.
3. A full bucket buffer becomes a FlushJob; jobs run on the same pool.
   Per-bucket locks in the writer keep one finalize in flight per bucket
   while different buckets encode in parallel.
4. close() flushes what is left and writes the index and manifest.

FAILURE HANDLING
────────────────────────────────────────────────────────────────────────────────
    - CorruptArchiveError / HashMismatchError: the blocks read before the
      failure are still appended (and flushed if a threshold is reached),
      in-flight flushes are awaited, the writer aborts, and the error is
      re-raised. Segments finalized before the failure stay queryable.
    - EncodeError: recorded per bucket by the writer; the run continues.
      Flush results are checked as they complete, so no failure is dropped.
    - Any other exception (including KeyboardInterrupt): the same abort path
      as archive errors, so the manifest and index always get written.
    - Cancellation (threading.Event): checked between windows; unflushed
      buffers are discarded and the report is marked cancelled.
    - Duplicate CIDs: the first occurrence is kept.

================================================================================
"""

import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Dict, List, Optional, Set, Union

from carpet.archive.car import Block, CarReader
from carpet.config import DEFAULT_CONFIG, IngestConfig
from carpet.errors import CorruptArchiveError, HashMismatchError
from carpet.schema.projector import project_block
from carpet.storage.writer import BucketWriter, Encoder

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    """Summary of one ingestion run."""

    out_dir: Path
    blocks_read: int = 0
    rows_written: int = 0
    duplicates: int = 0
    overflow_rows: int = 0
    segments: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def stats(self) -> Dict[str, int]:
        return {
            "blocks_read": self.blocks_read,
            "duplicates": self.duplicates,
            "overflow_rows": self.overflow_rows,
        }


class _Ingestion:
    """State of one run; owned by the coordinator thread."""

    def __init__(self, writer: BucketWriter, executor: ThreadPoolExecutor, report: IngestReport):
        self.writer = writer
        self.executor = executor
        self.report = report
        self.seen: Set[bytes] = set()
        self.flushes: List[Future] = []

    def process(self, window: List[Block]) -> None:
        unique = []
        for block in window:
            key = bytes(block.cid)
            if key in self.seen:
                self.report.duplicates += 1
                logger.warning("Skipping duplicate block %d (%s)", block.position, block.cid)
                continue
            self.seen.add(key)
            unique.append(block)

        for row in self.executor.map(project_block, unique):
            if row.overflow is not None:
                self.report.overflow_rows += 1
            job = self.writer.append(row)
            if job is not None:
                self.flushes.append(self.executor.submit(self.writer.run_flush, job))

        pending = []
        for future in self.flushes:
            if future.done():
                future.result()
            else:
                pending.append(future)
        self.flushes = pending

    def drain(self) -> None:
        """Wait for every submitted flush."""
        wait(self.flushes)
        flushes, self.flushes = self.flushes, []
        for future in flushes:
            future.result()

    def abort(self) -> None:
        """
        Persist whatever was finalized after an unexpected error.

        Waits for in-flight flushes; their own failures are logged since the
        error being handled takes precedence.
        """
        wait(self.flushes)
        flushes, self.flushes = self.flushes, []
        for future in flushes:
            error = future.exception()
            if error is not None:
                logger.error("Flush failed during abort: %r", error)
        if not self.writer.closed:
            self.finish(self.writer.abort(stats=self.report.stats()))

    def finish(self, summary) -> IngestReport:
        self.report.rows_written = summary.rows
        self.report.segments = summary.segments
        self.report.succeeded = summary.succeeded
        self.report.failed = summary.failed
        return self.report


def ingest(
    archive: Union[str, Path, IO[bytes]],
    out_dir: Union[str, Path],
    config: IngestConfig = DEFAULT_CONFIG,
    *,
    encoder: Optional[Encoder] = None,
    cancel: Optional[threading.Event] = None,
) -> IngestReport:
    """
    Convert a CAR archive into a bundle of bucketed Parquet tables.

    Args:
        archive: Path to a CARv1 file or a binary file object
        out_dir: Bundle directory to create
        config: Flush thresholds, batching and parallelism
        encoder: Segment encoder override (see BucketWriter)
        cancel: Set to stop the run between windows

    Returns:
        IngestReport with per-bucket outcomes

    Raises:
        CorruptArchiveError: If the archive framing is invalid
        HashMismatchError: If a block does not match its CID

    Example:
        >>> report = ingest("all.car", "out")
        >>> print(f"{report.rows_written} blocks in {len(report.succeeded)} buckets")
    """
    report = IngestReport(out_dir=Path(out_dir))

    with CarReader(archive) as reader:
        writer = BucketWriter(out_dir, config, encoder)
        with ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="carpet") as executor:
            run = _Ingestion(writer, executor, report)
            blocks = iter(reader)
            try:
                while True:
                    if cancel is not None and cancel.is_set():
                        report.cancelled = True
                        logger.warning("Ingestion cancelled after %d blocks", report.blocks_read)
                        break

                    window: List[Block] = []
                    try:
                        for block in itertools.islice(blocks, config.batch_size):
                            window.append(block)
                    except (CorruptArchiveError, HashMismatchError):
                        # blocks read before the failure are still stored
                        report.blocks_read += len(window)
                        run.process(window)
                        raise

                    if not window:
                        break
                    report.blocks_read += len(window)
                    run.process(window)

                run.drain()
                if report.cancelled:
                    summary = writer.abort(stats=report.stats())
                else:
                    summary = writer.close(stats=report.stats(), executor=executor)
            except BaseException as e:
                logger.error("Ingestion aborted: %s", e)
                run.abort()
                raise

    run.finish(summary)
    logger.info(
        "Ingested %d blocks: %d rows in %d buckets (%d overflow, %d duplicates, %d failed buckets)",
        report.blocks_read,
        report.rows_written,
        len(report.succeeded),
        report.overflow_rows,
        report.duplicates,
        len(report.failed),
    )
    return report
