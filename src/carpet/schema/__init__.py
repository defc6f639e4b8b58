"""
Schema system for carpet.

Provides the schema types describing decoded IPLD values, the classifier
assigning blocks to buckets, and the projector turning blocks into rows.
"""

from .types import (
    BaseType,
    Null,
    Bool,
    Int,
    Float,
    String,
    Bytes,
    Link,
    Mixed,
    Struct,
    List,
)
from .signature import (
    Classification,
    canonical_signature,
    classify,
    classify_value,
    infer_type,
    parse_signature,
    signature_id,
)
from .projector import ProjectedRow, ProjectionOverflow, bucket_schema, project, project_block

# Import types module for Types.X syntax
from . import types as Types

__all__ = [
    # Types module for Types.X syntax
    "Types",
    # Individual type classes
    "BaseType",
    "Null",
    "Bool",
    "Int",
    "Float",
    "String",
    "Bytes",
    "Link",
    "Mixed",
    "Struct",
    "List",
    # Classification
    "Classification",
    "canonical_signature",
    "classify",
    "classify_value",
    "infer_type",
    "parse_signature",
    "signature_id",
    # Projection
    "ProjectedRow",
    "ProjectionOverflow",
    "bucket_schema",
    "project",
    "project_block",
]
