"""
Bundle reader: random access to blocks stored in bucket segments.

DATA FLOW
=========

STEP 1: LOCATE
--------------
The index (index.parquet) is loaded once; its CID column is sorted, so a
lookup is a binary search giving (bucket, segment, row):

    bafyrei...  ->  bucket 3f1c...  segment 0002  row 517

STEP 2: READ ONE ROW GROUP
--------------------------
Only the segment file holding the row is opened, and only the row group
containing the row is decoded. The rest of the bundle is never touched.

STEP 3: REHYDRATE
-----------------
    escape column set  -> the original bytes, returned as-is
    raw bucket         -> the typed binary column is the block
    otherwise          -> value rebuilt from the typed column using the bucket
                          signature, then re-encoded as DAG-CBOR

STEP 4: VERIFY
--------------
The rebuilt bytes are hashed with the CID's hash function. A mismatch raises
IntegrityError instead of returning wrong data.

Besides point lookups the reader streams whole buckets (iter_rows), loads
them as DataFrames for analysis (to_dataframe), and exports selected blocks
to a new CAR archive (export_car).

Nothing here mutates shared state after construction; one reader can serve
concurrent get() calls from many threads.
"""

import logging
from pathlib import Path
from typing import IO, Any, Dict, Iterable, Iterator, Literal, Optional, Sequence, Tuple, Union

import dag_cbor
import pandas as pd
import polars as pl
import pyarrow as pa
import pyarrow.parquet as pq
from dag_cbor.decoding import CBORDecodingError
from dag_cbor.encoding import CBOREncodingError
from multiformats import CID

from carpet.archive.car import CarWriter, decode_cid, verify_block
from carpet.constants import (
    CID_COLUMN,
    DATA_COLUMN,
    DEFAULT_BATCH_SIZE,
    ESCAPE_COLUMN,
    INDEX_FILE,
    MANIFEST_FILE,
    RAW_BUCKET,
)
from carpet.errors import IntegrityError, NotFoundError
from carpet.storage.index import BucketInfo, Index, IndexEntry, Manifest

logger = logging.getLogger(__name__)

CIDLike = Union[CID, bytes, str]


def as_cid(cid: CIDLike) -> CID:
    """
    Accept a CID, its binary form or its string form.

    Raises:
        ValueError: If the value is not a valid CID
    """
    if isinstance(cid, CID):
        return cid
    try:
        if isinstance(cid, (bytes, bytearray, memoryview)):
            return decode_cid(bytes(cid))
        return CID.decode(cid)
    except (KeyError, ValueError) as e:
        raise ValueError(f"Invalid CID: {cid!r}") from e


class BundleReader:
    """
    Reads blocks back from a bundle written by ingest().

    Example:
        >>> reader = BundleReader("out")
        >>> data = reader.get("bafyreib...")
        >>>
        >>> # Every stored CID, in index order
        >>> for cid in reader.list():
        ...     print(cid)
        >>>
        >>> # One bucket as a DataFrame
        >>> df = reader.to_dataframe(bucket_id, engine="polars")
    """

    def __init__(self, bundle_dir: Union[str, Path]):
        """
        Open a bundle.

        Args:
            bundle_dir: Directory containing manifest.json and index.parquet

        Raises:
            FileNotFoundError: If the directory or its manifest is missing
        """
        self.bundle_dir = Path(bundle_dir)

        if not self.bundle_dir.exists():
            raise FileNotFoundError(f"Bundle directory not found: {bundle_dir}")
        manifest_path = self.bundle_dir / MANIFEST_FILE
        if not manifest_path.exists():
            raise FileNotFoundError(f"Bundle manifest not found: {manifest_path}")

        self.manifest = Manifest.read(manifest_path)
        self._index = Index(self.bundle_dir / INDEX_FILE)

        if not self.manifest.complete:
            logger.warning("Bundle %s is incomplete (ingestion was aborted)", self.bundle_dir)

    # -------------------------------------------------------------------------
    # Point lookups
    # -------------------------------------------------------------------------

    def get(self, cid: CIDLike) -> bytes:
        """
        Return the original bytes of a block.

        Args:
            cid: CID object, binary CID or CID string

        Raises:
            NotFoundError: If the CID is not in the bundle
            IntegrityError: If the stored row cannot be rebuilt into bytes
                matching the CID
        """
        cid = as_cid(cid)
        entry = self._index.lookup(bytes(cid))
        if entry is None:
            raise NotFoundError(cid)

        bucket = self.manifest.buckets.get(entry.bucket)
        if bucket is None:
            raise IntegrityError(cid, f"index references unknown bucket '{entry.bucket}'")

        record = self._read_row(cid, bucket, entry)
        if record[CID_COLUMN] != bytes(cid):
            raise IntegrityError(cid, "index points at a row holding another CID")

        data = self._rehydrate(cid, bucket, record)
        if not verify_block(cid, data):
            raise IntegrityError(cid)
        return data

    def _read_row(self, cid: CID, bucket: BucketInfo, entry: IndexEntry) -> Dict[str, Any]:
        try:
            segment = bucket.segment(entry.segment)
            with pq.ParquetFile(self.bundle_dir / segment.file) as parquet_file:
                offset = entry.row
                for i in range(parquet_file.metadata.num_row_groups):
                    group_rows = parquet_file.metadata.row_group(i).num_rows
                    if offset < group_rows:
                        table = parquet_file.read_row_group(i)
                        return table.slice(offset, 1).to_pylist()[0]
                    offset -= group_rows
        except (KeyError, OSError, pa.ArrowException) as e:
            raise IntegrityError(cid, f"cannot read segment: {e}") from e
        raise IntegrityError(cid, f"row {entry.row} is past the end of segment {entry.segment}")

    def _rehydrate(self, cid: CID, bucket: BucketInfo, record: Dict[str, Any]) -> bytes:
        escape = record[ESCAPE_COLUMN]
        if escape is not None:
            return bytes(escape)
        if bucket.signature is None:
            raise IntegrityError(cid, "opaque row without escape payload")
        try:
            value = bucket.signature.decode_value(record[DATA_COLUMN])
            if bucket.bucket_id == RAW_BUCKET:
                return bytes(value)
            return dag_cbor.encode(value)
        except (CBORDecodingError, CBOREncodingError, KeyError, ValueError, TypeError) as e:
            raise IntegrityError(cid, f"cannot rebuild value: {e}") from e

    def __contains__(self, cid: CIDLike) -> bool:
        try:
            return bytes(as_cid(cid)) in self._index
        except ValueError:
            return False

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    def list(self) -> Iterator[CID]:
        """
        Iterate every stored CID in index (binary CID) order.

        Each call starts a new pass.
        """
        for key in self._index:
            yield decode_cid(key)

    def __iter__(self) -> Iterator[CID]:
        return self.list()

    def __len__(self) -> int:
        """Number of blocks stored in the bundle."""
        return len(self._index)

    def buckets(self) -> Dict[str, BucketInfo]:
        return dict(self.manifest.buckets)

    def get_statistics(self) -> Dict[str, Any]:
        """Bundle metadata: bucket, segment and block counts."""
        segments = sum(len(b.segments) for b in self.manifest.buckets.values())
        return {
            "bundle_dir": str(self.bundle_dir),
            "complete": self.manifest.complete,
            "bucket_count": len(self.manifest.buckets),
            "file_count": segments,
            "block_count": len(self._index),
            "failed_buckets": sorted(self.manifest.failed),
            "rows_per_bucket": {bid: b.rows for bid, b in sorted(self.manifest.buckets.items())},
            **self.manifest.stats,
        }

    # -------------------------------------------------------------------------
    # Bucket scans
    # -------------------------------------------------------------------------

    def _bucket(self, bucket_id: str) -> BucketInfo:
        try:
            return self.manifest.buckets[bucket_id]
        except KeyError:
            raise KeyError(f"Unknown bucket: {bucket_id}") from None

    def iter_rows(
        self,
        bucket_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> Iterator[Dict[str, Any]]:
        """
        Stream the rows of one bucket.

        Reads in batches to avoid loading the bucket into memory.

        Yields:
            {"cid": CID, "value": decoded value or None, "escape": bytes or None}
        """
        bucket = self._bucket(bucket_id)
        for segment in bucket.segments:
            with pq.ParquetFile(self.bundle_dir / segment.file) as parquet_file:
                for batch in parquet_file.iter_batches(batch_size=batch_size):
                    for record in batch.to_pylist():
                        escape = record[ESCAPE_COLUMN]
                        value = None
                        if escape is None and bucket.signature is not None:
                            value = bucket.signature.decode_value(record[DATA_COLUMN])
                        yield {
                            "cid": decode_cid(record[CID_COLUMN]),
                            "value": value,
                            "escape": escape,
                        }

    def iter_blocks(self) -> Iterator[Tuple[CID, bytes]]:
        """Every stored block as (cid, bytes), in index order."""
        for cid in self.list():
            yield cid, self.get(cid)

    def read_bucket(self, bucket_id: str) -> pa.Table:
        """Load all segments of a bucket as one Arrow table."""
        bucket = self._bucket(bucket_id)
        tables = [pq.read_table(self.bundle_dir / s.file) for s in bucket.segments]
        return pa.concat_tables(tables)

    def _flatten_struct_columns(self, table: pa.Table) -> pa.Table:
        """
        Flatten nested struct columns into dotted column names.

        Example:
            data: {'a': 1, 'meta': {'size': 3}}
            -> data.a: 1, data.meta.size: 3
        """
        while any(pa.types.is_struct(f.type) for f in table.schema):
            table = table.flatten()
        return table

    def to_dataframe(
        self,
        bucket_id: str,
        engine: Literal["pandas", "polars"] = "pandas",
        flatten: bool = True,
    ) -> Union[pd.DataFrame, "pl.DataFrame"]:
        """
        Load one bucket as a DataFrame.

        The CID column is converted to CID strings. Escaped rows have null
        typed columns and carry their bytes in the escape column.

        Args:
            bucket_id: Bucket to load
            engine: "pandas" or "polars"
            flatten: Expand nested structs into dotted column names

        Returns:
            DataFrame with one row per block
        """
        table = self.read_bucket(bucket_id)
        cids = pa.array(
            [str(decode_cid(b)) for b in table.column(CID_COLUMN).to_pylist()],
            type=pa.string(),
        )
        table = table.set_column(table.schema.get_field_index(CID_COLUMN), CID_COLUMN, cids)
        table = table.replace_schema_metadata(None)
        if flatten:
            table = self._flatten_struct_columns(table)

        if engine == "pandas":
            return table.to_pandas()
        elif engine == "polars":
            return pl.from_arrow(table)
        raise ValueError(f"Unknown engine: {engine!r}")

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_car(
        self,
        cids: Iterable[CIDLike],
        dest: Union[str, Path, IO[bytes]],
        roots: Optional[Sequence[CIDLike]] = None,
    ) -> int:
        """
        Write selected blocks to a new CARv1 archive.

        Args:
            cids: Blocks to export, written in the given order
            dest: Output path or binary file object
            roots: Header roots; defaults to the exported CIDs

        Returns:
            Number of blocks written

        Raises:
            NotFoundError: If a CID is not in the bundle
        """
        selected = [as_cid(c) for c in cids]
        header_roots = [as_cid(r) for r in roots] if roots is not None else selected
        with CarWriter(dest, roots=header_roots) as writer:
            for cid in selected:
                writer.write(cid, self.get(cid))
            count = writer.count
        logger.info("Exported %d blocks to %s", count, dest)
        return count
