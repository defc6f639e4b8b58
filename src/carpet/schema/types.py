"""
Type definitions for carpet's schema system.

These types describe the shape of a decoded IPLD value and how each part of
it maps to an Arrow/Parquet column. A tree of these types is a block's
*signature*: blocks with equal signatures share a bucket, and therefore a
Parquet table.

Supported Types:
- Primitives: Null, Bool, Int, Float, String, Bytes, Link
- Complex: Struct (IPLD maps), List (IPLD lists)
- Mixed: list elements whose shapes disagree, stored as DAG-CBOR bytes

Each type converts in both directions:

    encode_value(ipld)   -> value accepted by pyarrow for to_arrow()
    decode_value(column) -> the IPLD value (dag_cbor.encode reproduces the bytes)

Conversion never loses information silently: a value that the column type
cannot hold exactly raises UnrepresentableValue and the row falls back to the
escape column.
"""

from abc import ABC, abstractmethod
from typing import Dict, Tuple

import dag_cbor
import pyarrow as pa

from carpet.archive.car import decode_cid

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class UnrepresentableValue(ValueError):
    """A value cannot be stored losslessly in its typed column."""


class BaseType(ABC):
    """Base class for all carpet types."""

    kind: str = ""

    @abstractmethod
    def to_arrow(self) -> pa.DataType:
        """Convert to PyArrow data type."""
        pass

    def encode_value(self, value):
        """Convert an IPLD value to its column representation."""
        return value

    def decode_value(self, value):
        """Convert a column value back to the IPLD value."""
        return value

    def to_dict(self) -> dict:
        """Canonical JSON-compatible description."""
        return {"kind": self.kind}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    def __eq__(self, other) -> bool:
        """Compare types for equality."""
        return isinstance(other, self.__class__)

    def __hash__(self) -> int:
        """Make types hashable for use in sets/dicts."""
        return hash(self.__class__.__name__)


class Null(BaseType):
    """IPLD null. Stored as an Arrow null column."""

    kind = "null"

    def to_arrow(self) -> pa.DataType:
        return pa.null()

    def encode_value(self, value):
        return None

    def decode_value(self, value):
        return None


class Bool(BaseType):
    """Boolean type."""

    kind = "bool"

    def to_arrow(self) -> pa.DataType:
        return pa.bool_()


class Int(BaseType):
    """
    Integer type, stored as int64.

    DAG-CBOR integers span [-2**64, 2**64 - 1]; values outside int64 are
    unrepresentable.
    """

    kind = "int"

    def to_arrow(self) -> pa.DataType:
        return pa.int64()

    def encode_value(self, value):
        if not INT64_MIN <= value <= INT64_MAX:
            raise UnrepresentableValue(f"Integer {value} does not fit in int64")
        return value


class Float(BaseType):
    """Floating-point type. DAG-CBOR floats are always 64-bit."""

    kind = "float"

    def to_arrow(self) -> pa.DataType:
        return pa.float64()


class String(BaseType):
    """String type."""

    kind = "string"

    def to_arrow(self) -> pa.DataType:
        return pa.string()


class Bytes(BaseType):
    """Byte string type."""

    kind = "bytes"

    def to_arrow(self) -> pa.DataType:
        return pa.binary()

    def decode_value(self, value):
        return bytes(value)


class Link(BaseType):
    """IPLD link (CID), stored as its binary form."""

    kind = "link"

    def to_arrow(self) -> pa.DataType:
        return pa.binary()

    def encode_value(self, value):
        return bytes(value)

    def decode_value(self, value):
        return decode_cid(bytes(value))


class Mixed(BaseType):
    """
    Polymorphic type - any IPLD value.

    Used for list elements whose shapes disagree and for top-level values
    that are not maps. Stored as the value's DAG-CBOR encoding in a binary
    column; decoding it gives back the value unchanged.
    """

    kind = "mixed"

    def to_arrow(self) -> pa.DataType:
        return pa.binary()

    def encode_value(self, value):
        return dag_cbor.encode(value)

    def decode_value(self, value):
        return dag_cbor.decode(bytes(value))


class Struct(BaseType):
    """
    IPLD map with a fixed set of keys.

    Fields are kept sorted by name so that two maps with the same keys and
    field types compare (and hash) equal whatever their insertion order. An
    empty map has no child columns, which Parquet cannot store, so it is
    stored as a null column.
    """

    kind = "struct"

    def __init__(self, fields: Dict[str, BaseType]):
        """
        Args:
            fields: Dict mapping field name to type
        """
        self.fields = {name: fields[name] for name in sorted(fields)}

    def to_arrow(self) -> pa.DataType:
        if not self.fields:
            return pa.null()
        return pa.struct([
            (name, field_type.to_arrow())
            for name, field_type in self.fields.items()
        ])

    def encode_value(self, value):
        if not self.fields:
            return None
        return {name: field_type.encode_value(value[name]) for name, field_type in self.fields.items()}

    def decode_value(self, value):
        if not self.fields:
            return {}
        return {name: field_type.decode_value(value[name]) for name, field_type in self.fields.items()}

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "fields": [[name, field_type.to_dict()] for name, field_type in self.fields.items()],
        }

    def __repr__(self) -> str:
        field_str = ", ".join(f"{k}: {v}" for k, v in self.fields.items())
        return f"Struct({{{field_str}}})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Struct):
            return False
        if set(self.fields.keys()) != set(other.fields.keys()):
            return False
        return all(self.fields[k] == other.fields[k] for k in self.fields)

    def __hash__(self) -> int:
        return hash(("Struct", tuple(self.fields.items())))


class List(BaseType):
    """List type."""

    kind = "list"

    def __init__(self, element_type: BaseType):
        """
        Args:
            element_type: Type of list elements
        """
        self.element_type = element_type

    def to_arrow(self) -> pa.DataType:
        return pa.list_(self.element_type.to_arrow())

    def encode_value(self, value):
        return [self.element_type.encode_value(v) for v in value]

    def decode_value(self, value):
        return [self.element_type.decode_value(v) for v in value]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "element": self.element_type.to_dict()}

    def __repr__(self) -> str:
        return f"List({self.element_type})"

    def __eq__(self, other) -> bool:
        return isinstance(other, List) and self.element_type == other.element_type

    def __hash__(self) -> int:
        return hash(("List", self.element_type))


_PRIMITIVES: Tuple[type, ...] = (Null, Bool, Int, Float, String, Bytes, Link, Mixed)
_BY_KIND = {cls.kind: cls for cls in _PRIMITIVES}


def type_from_dict(data: dict) -> BaseType:
    """
    Rebuild a type from its to_dict() form.

    Raises:
        ValueError: If the description is malformed or names an unknown kind
    """
    try:
        kind = data["kind"]
        if kind == Struct.kind:
            return Struct({name: type_from_dict(sub) for name, sub in data["fields"]})
        if kind == List.kind:
            return List(type_from_dict(data["element"]))
        return _BY_KIND[kind]()
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid type description: {data!r}") from e
