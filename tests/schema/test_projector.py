"""
Tests for carpet.schema.projector module.

Covers:
- Typed projection of maps, links, raw and scalar blocks
- ProjectionOverflow fallback to the escape column
- Bucket table schema
"""

import json

import pyarrow as pa

from carpet.archive.car import Block
from carpet.constants import SIGNATURE_METADATA_KEY
from carpet.schema import bucket_schema, infer_type, parse_signature, project


def _block(cid_and_data, position=0):
    cid, data = cid_and_data
    return Block(cid=cid, data=data, position=position)


class TestTypedProjection:
    """Rows whose typed columns reproduce the block."""

    def test_map_block(self, make_block):
        block = _block(make_block({"a": 1, "b": "one"}))

        row = project(block)

        assert row.overflow is None
        assert row.escape is None
        assert row.data == {"a": 1, "b": "one"}
        assert row.size == len(block.data)

    def test_links_become_cid_bytes(self, make_block):
        target, _ = make_block({"leaf": 1})
        block = _block(make_block({"next": target}))

        row = project(block)

        assert row.data == {"next": bytes(target)}

    def test_mixed_list_elements_become_dag_cbor(self, make_block):
        block = _block(make_block({"items": [1, "two", None]}))

        row = project(block)

        assert row.overflow is None
        assert len(row.data["items"]) == 3
        assert all(isinstance(item, bytes) for item in row.data["items"])

    def test_raw_block_is_its_own_column(self, make_block):
        block = _block(make_block(b"\x00\x01\x02", codec="raw"))

        row = project(block)

        assert row.overflow is None
        assert row.data == b"\x00\x01\x02"

    def test_scalar_block(self, make_block):
        block = _block(make_block("just a string"))

        row = project(block)

        assert row.overflow is None
        assert row.data == block.data


class TestProjectionOverflow:
    """Rows that fall back to the escape column."""

    def test_integer_outside_int64(self, make_block):
        """DAG-CBOR allows 64-bit unsigned integers; int64 columns do not."""
        block = _block(make_block({"a": 2**63, "b": "big"}))

        row = project(block)

        assert row.overflow is not None
        assert "int64" in row.overflow.reason
        assert row.data is None
        assert row.escape == block.data
        # same bucket as small integers
        assert row.bucket_id == project(_block(make_block({"a": 1, "b": "x"}))).bucket_id

    def test_non_canonical_encoding(self, encoded_block):
        """Map keys out of canonical order would not re-encode identically."""
        # {"b": 1, "a": 2} with keys in insertion order
        block = _block(encoded_block(b"\xa2\x61b\x01\x61a\x02"))

        row = project(block)

        assert row.overflow is not None
        assert row.escape == block.data
        assert row.data is None

    def test_non_minimal_integer(self, encoded_block):
        # {"a": 1} with 1 encoded in two bytes
        block = _block(encoded_block(b"\xa1\x61a\x18\x01"))

        row = project(block)

        assert row.overflow is not None
        assert row.escape == block.data

    def test_opaque_block(self, encoded_block):
        block = _block(encoded_block(b"\x0a\x02hi", codec="dag-pb"))

        row = project(block)

        assert row.overflow is not None
        assert row.signature is None
        assert row.escape == block.data


class TestBucketSchema:
    """Test bucket table schema."""

    def test_reserved_columns(self):
        signature = infer_type({"a": 1})

        schema = bucket_schema(signature)

        assert schema.names == ["cid", "data", "escape"]
        assert schema.field("cid").type == pa.binary()
        assert schema.field("escape").type == pa.binary()
        assert schema.field("data").type == pa.struct([("a", pa.int64())])

    def test_signature_in_metadata(self):
        signature = infer_type({"a": [1], "b": {"c": "x"}})

        schema = bucket_schema(signature)

        stored = schema.metadata[SIGNATURE_METADATA_KEY].decode("utf-8")
        assert parse_signature(stored) == signature
        json.loads(stored)

    def test_opaque_bucket_has_null_data(self):
        schema = bucket_schema(None)

        assert schema.field("data").type == pa.null()
        assert not schema.metadata

    def test_rows_build_a_table(self, make_block):
        blocks = [_block(make_block({"a": i, "b": str(i)}), i) for i in range(3)]
        blocks.append(_block(make_block({"a": 2**64 - 1, "b": "max"}), 3))
        rows = [project(b) for b in blocks]

        table = pa.Table.from_pylist(
            [r.to_record() for r in rows], schema=bucket_schema(rows[0].signature)
        )

        assert table.num_rows == 4
        assert table.column("escape").null_count == 3
        assert table.column("data").null_count == 1
