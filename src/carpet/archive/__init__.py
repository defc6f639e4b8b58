"""
Content-addressed archive access for carpet.

- CarReader: streaming, verifying reader for CARv1 archives
- CarWriter: CARv1 writer used to export subsets of a bundle
"""

from .car import DAG_CBOR, RAW, Block, CarReader, CarWriter, decode_cid, iter_links, verify_block

__all__ = [
    "Block",
    "CarReader",
    "CarWriter",
    "DAG_CBOR",
    "decode_cid",
    "RAW",
    "iter_links",
    "verify_block",
]
