"""
Schema classification for IPLD blocks.

Walks a decoded block and computes its signature (a tree of schema types),
then assigns the block to a bucket:

    DAG-CBOR map        -> struct bucket, id = MD5 of the canonical signature
    DAG-CBOR link       -> "link" bucket   (signature Link)
    other DAG-CBOR      -> "scalar" bucket (signature Mixed)
    raw codec           -> "raw" bucket    (signature Bytes)
    anything else       -> "opaque" bucket (no signature, escape column only)

Signatures are computed from sorted map keys, so the same shape always
produces the same signature and the same bucket id.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from dag_cbor.decoding import CBORDecodingError
from multiformats import CID

from carpet.archive.car import DAG_CBOR, RAW, Block
from carpet.constants import LINK_BUCKET, OPAQUE_BUCKET, RAW_BUCKET, SCALAR_BUCKET
from carpet.schema.types import (
    BaseType,
    Bool,
    Bytes,
    Float,
    Int,
    Link,
    List,
    Mixed,
    Null,
    String,
    Struct,
    type_from_dict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """Bucket assignment of one block."""

    bucket_id: str
    signature: Optional[BaseType]  # None for the opaque bucket
    value: Any  # decoded value, None when the block was not decoded


def infer_type(value: Any) -> BaseType:
    """
    Compute the schema type of a decoded IPLD value.

    Lists take the type shared by all their elements; lists whose elements
    disagree get List(Mixed()), and empty lists get List(Null()).

    Example:
        >>> infer_type({"b": "x", "a": [1, 2]})
        Struct({a: List(Int()), b: String()})
    """
    # bool before int: bool is a subclass of int
    if value is None:
        return Null()
    if isinstance(value, bool):
        return Bool()
    if isinstance(value, int):
        return Int()
    if isinstance(value, float):
        return Float()
    if isinstance(value, str):
        return String()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Bytes()
    if isinstance(value, CID):
        return Link()
    if isinstance(value, list):
        if not value:
            return List(Null())
        element_types = {infer_type(item) for item in value}
        if len(element_types) == 1:
            return List(element_types.pop())
        return List(Mixed())
    if isinstance(value, dict):
        return Struct({key: infer_type(item) for key, item in value.items()})
    raise TypeError(f"Not an IPLD value: {type(value).__name__}")


def canonical_signature(signature: BaseType) -> str:
    """Deterministic JSON form of a signature."""
    return json.dumps(signature.to_dict(), sort_keys=True, separators=(",", ":"))


def parse_signature(text: str) -> BaseType:
    """Inverse of canonical_signature()."""
    return type_from_dict(json.loads(text))


def signature_id(signature: BaseType) -> str:
    """
    Create the bucket id of a map signature.

    Uses MD5 of the canonical JSON, so the same signature always produces the
    same id across runs and processes.

    Returns:
        Hex string hash (32 characters)
    """
    return hashlib.md5(canonical_signature(signature).encode("utf-8")).hexdigest()


def classify_value(value: Any) -> Classification:
    """Classify a decoded DAG-CBOR value."""
    if isinstance(value, dict):
        signature = infer_type(value)
        return Classification(signature_id(signature), signature, value)
    if isinstance(value, CID):
        return Classification(LINK_BUCKET, Link(), value)
    return Classification(SCALAR_BUCKET, Mixed(), value)


def classify(block: Block) -> Classification:
    """
    Assign a block to its bucket.

    Blocks that cannot be decoded are not rejected; they go to the opaque
    bucket and are stored through the escape column.
    """
    if block.codec == RAW:
        return Classification(RAW_BUCKET, Bytes(), block.data)
    if block.codec != DAG_CBOR:
        logger.debug("Block %s has codec %s, classified as opaque", block.cid, block.codec)
        return Classification(OPAQUE_BUCKET, None, None)
    try:
        value = block.decode()
    except CBORDecodingError as e:
        logger.debug("Block %s is not valid DAG-CBOR (%s), classified as opaque", block.cid, e)
        return Classification(OPAQUE_BUCKET, None, None)
    return classify_value(value)
