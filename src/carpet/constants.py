"""
Shared constants for carpet.

Defaults for ingestion (flush thresholds, batching) and the bundle layout
written by the storage layer.
"""

# Blocks read from the archive per classification/projection window
DEFAULT_BATCH_SIZE = 1_024

# A bucket buffer is flushed to a new segment when either limit is reached
DEFAULT_FLUSH_ROWS = 65_536
DEFAULT_FLUSH_BYTES = 64 * 1024 * 1024

# Rows per Parquet row group; a point lookup decodes one row group
DEFAULT_ROW_GROUP_SIZE = 4_096

DEFAULT_COMPRESSION = "snappy"

# =============================================================================
# BUNDLE LAYOUT
# =============================================================================

FORMAT_VERSION = 1

MANIFEST_FILE = "manifest.json"
INDEX_FILE = "index.parquet"
BUCKETS_DIR = "buckets"
SEGMENT_FILE_TEMPLATE = "seg_{segment:04}.parquet"

# Reserved columns of every bucket table
CID_COLUMN = "cid"
DATA_COLUMN = "data"
ESCAPE_COLUMN = "escape"

# Fixed buckets for blocks that are not DAG-CBOR maps
SCALAR_BUCKET = "scalar"
LINK_BUCKET = "link"
RAW_BUCKET = "raw"
OPAQUE_BUCKET = "opaque"

# Parquet schema metadata key holding the bucket signature
SIGNATURE_METADATA_KEY = b"carpet.signature"
