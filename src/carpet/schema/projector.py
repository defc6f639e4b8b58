"""
Row projection: decoded block -> columnar row.

Every row has the same three columns whatever its bucket:

    cid     binary   primary key
    data    typed    the block's value, Arrow type from the bucket signature
    escape  binary   original block bytes when typed projection is not exact

Round-trip is never traded for compression. A row is only typed when the
projector has confirmed that rebuilding the value from its columns and
re-encoding it gives back the exact block bytes; otherwise the row carries a
ProjectionOverflow and the original bytes go to the escape column with
``data`` left null. Overflow is a normal outcome, not an error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import dag_cbor
import pyarrow as pa
from dag_cbor.encoding import CBOREncodingError
from multiformats import CID

from carpet.archive.car import Block
from carpet.constants import (
    CID_COLUMN,
    DATA_COLUMN,
    ESCAPE_COLUMN,
    RAW_BUCKET,
    SIGNATURE_METADATA_KEY,
)
from carpet.schema.signature import Classification, canonical_signature, classify
from carpet.schema.types import BaseType, UnrepresentableValue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectionOverflow:
    """Why a row was stored through the escape column."""

    reason: str


@dataclass(frozen=True)
class ProjectedRow:
    """One block projected onto its bucket's columns."""

    bucket_id: str
    signature: Optional[BaseType]
    cid: CID
    data: Any
    escape: Optional[bytes]
    size: int  # original block size, used for flush thresholds
    overflow: Optional[ProjectionOverflow] = None

    def to_record(self) -> dict:
        return {
            CID_COLUMN: bytes(self.cid),
            DATA_COLUMN: self.data,
            ESCAPE_COLUMN: self.escape,
        }


def bucket_schema(signature: Optional[BaseType]) -> pa.Schema:
    """
    Arrow schema of a bucket table.

    The signature is stored in the schema metadata so that a segment file is
    self-describing.
    """
    data_type = signature.to_arrow() if signature is not None else pa.null()
    metadata = {}
    if signature is not None:
        metadata[SIGNATURE_METADATA_KEY] = canonical_signature(signature).encode("utf-8")
    return pa.schema(
        [
            pa.field(CID_COLUMN, pa.binary(), nullable=False),
            pa.field(DATA_COLUMN, data_type),
            pa.field(ESCAPE_COLUMN, pa.binary()),
        ],
        metadata=metadata or None,
    )


def _escape(classification: Classification, block: Block, reason: str) -> ProjectedRow:
    return ProjectedRow(
        bucket_id=classification.bucket_id,
        signature=classification.signature,
        cid=block.cid,
        data=None,
        escape=block.data,
        size=len(block.data),
        overflow=ProjectionOverflow(reason),
    )


def project(block: Block, classification: Optional[Classification] = None) -> ProjectedRow:
    """
    Project a block onto its bucket's columns.

    Args:
        block: Verified block from the archive
        classification: Result of classify(block); computed when omitted

    Returns:
        ProjectedRow, with ``overflow`` set when the escape column is used
    """
    if classification is None:
        classification = classify(block)
    signature = classification.signature

    if signature is None:
        return _escape(classification, block, f"undecodable {block.codec} block")

    if classification.bucket_id == RAW_BUCKET:
        # the value is the block itself
        return ProjectedRow(
            classification.bucket_id, signature, block.cid, block.data, None, len(block.data)
        )

    try:
        reencoded = dag_cbor.encode(classification.value)
    except CBOREncodingError as e:
        return _escape(classification, block, f"value does not re-encode: {e}")
    if reencoded != block.data:
        return _escape(classification, block, "block is not canonical DAG-CBOR")

    try:
        data = signature.encode_value(classification.value)
    except UnrepresentableValue as e:
        return _escape(classification, block, str(e))

    return ProjectedRow(classification.bucket_id, signature, block.cid, data, None, len(block.data))


def project_block(block: Block) -> ProjectedRow:
    """Classify and project a block; the unit of work for the worker pool."""
    row = project(block)
    if row.overflow is not None and row.signature is None:
        logger.debug("Block %d (%s) stored opaque", block.position, block.cid)
    elif row.overflow is not None:
        logger.warning(
            "Block %d (%s) stored in escape column: %s",
            block.position,
            block.cid,
            row.overflow.reason,
        )
    return row
