"""
Tests for carpet.archive.car module.

Covers:
- CarReader header parsing and block streaming
- Framing errors (CorruptArchiveError)
- Hash verification (HashMismatchError)
- CarWriter output readable by CarReader
"""

import io

import dag_cbor
import pytest

from carpet.archive.car import Block, CarReader, CarWriter, iter_links
from carpet.errors import CorruptArchiveError, HashMismatchError


class TestCarReaderHeader:
    """Test header parsing."""

    def test_exposes_roots_and_version(self, make_block, write_car):
        """Reader should parse the header roots."""
        blocks = [make_block({"a": 1}), make_block({"a": 2})]
        path = write_car(blocks, roots=[blocks[1][0]])

        with CarReader(path) as reader:
            assert reader.version == 1
            assert [bytes(r) for r in reader.roots] == [bytes(blocks[1][0])]

    def test_empty_file_is_corrupt(self, tmp_path):
        """An empty file has no header."""
        path = tmp_path / "empty.car"
        path.write_bytes(b"")

        with pytest.raises(CorruptArchiveError):
            CarReader(path)

    def test_rejects_unsupported_version(self, write_raw_car):
        """Only CARv1 is supported."""
        path = write_raw_car([], header=dag_cbor.encode({"version": 2, "roots": []}))

        with pytest.raises(CorruptArchiveError, match="version"):
            CarReader(path)

    def test_rejects_non_map_header(self, write_raw_car):
        path = write_raw_car([], header=dag_cbor.encode([1, 2]))

        with pytest.raises(CorruptArchiveError):
            CarReader(path)


class TestCarReaderBlocks:
    """Test block streaming."""

    def test_yields_blocks_in_order(self, make_block, write_car):
        """Blocks should come back in archive order with their positions."""
        blocks = [make_block({"n": i}) for i in range(5)]
        path = write_car(blocks)

        with CarReader(path) as reader:
            read = list(reader)

        assert [bytes(b.cid) for b in read] == [bytes(cid) for cid, _ in blocks]
        assert [b.data for b in read] == [data for _, data in blocks]
        assert [b.position for b in read] == list(range(5))

    def test_cids_use_base32(self, make_block, write_car):
        blocks = [make_block({"a": 1})]

        with CarReader(write_car(blocks)) as reader:
            block = next(iter(reader))

        assert str(block.cid) == str(blocks[0][0])
        assert str(block.cid).startswith("bafy")

    def test_accepts_file_object(self, make_block, write_car):
        """Reader should accept a binary stream."""
        blocks = [make_block({"a": 1})]
        path = write_car(blocks)

        reader = CarReader(io.BytesIO(path.read_bytes()))

        assert len(list(reader)) == 1

    def test_is_single_pass(self, make_block, write_car):
        """Iterating twice should fail rather than silently yield nothing."""
        path = write_car([make_block({"a": 1})])

        with CarReader(path) as reader:
            list(reader)
            with pytest.raises(RuntimeError):
                iter(reader)

    def test_declared_links(self, make_block, write_car):
        """block.links should list the CIDs referenced by the block."""
        leaf_cid, leaf = make_block({"leaf": True})
        raw_cid, raw = make_block(b"payload", codec="raw")
        parent = make_block({"children": [leaf_cid, raw_cid], "name": "p"})
        path = write_car([(leaf_cid, leaf), (raw_cid, raw), parent])

        with CarReader(path) as reader:
            read = list(reader)

        assert read[0].links == []
        assert read[1].links == []
        assert [bytes(c) for c in read[2].links] == [bytes(leaf_cid), bytes(raw_cid)]

    def test_decode_is_cached(self, make_block):
        cid, data = make_block({"a": [1, 2]})
        block = Block(cid=cid, data=data, position=0)

        assert block.decode() is block.decode()
        assert block.decode() == {"a": [1, 2]}

    def test_decode_rejects_raw_blocks(self, make_block):
        cid, data = make_block(b"\x00\x01", codec="raw")
        block = Block(cid=cid, data=data, position=0)

        with pytest.raises(ValueError):
            block.decode()


class TestFramingErrors:
    """Test CorruptArchiveError reporting."""

    def test_truncated_section(self, make_block, write_raw_car, section):
        """A section cut short should report the block position."""
        good = section(*make_block({"a": 1}))
        cut = section(*make_block({"a": 2}))[:-3]
        path = write_raw_car([good, cut])

        with CarReader(path) as reader:
            blocks = iter(reader)
            assert next(blocks).position == 0
            with pytest.raises(CorruptArchiveError) as exc_info:
                next(blocks)

        assert exc_info.value.position == 1

    def test_truncated_varint(self, write_raw_car):
        path = write_raw_car([b"\x80"])

        with CarReader(path) as reader:
            with pytest.raises(CorruptArchiveError, match="varint"):
                list(reader)

    def test_empty_section(self, write_raw_car):
        path = write_raw_car([b"\x00"])

        with CarReader(path) as reader:
            with pytest.raises(CorruptArchiveError) as exc_info:
                list(reader)

        assert exc_info.value.position == 0

    def test_invalid_cid(self, write_raw_car):
        """Section bytes that do not start with a CID are corrupt."""
        # CIDv1 dag-cbor sha2-256 header announcing 32 digest bytes, followed by 3
        body = b"\x01\x71\x12\x20abc"
        path = write_raw_car([bytes([len(body)]) + body])

        with CarReader(path) as reader:
            with pytest.raises(CorruptArchiveError):
                list(reader)


class TestHashVerification:
    """Test HashMismatchError."""

    def test_tampered_block_raises_with_position(self, make_block, write_raw_car, section):
        """A block that does not hash to its CID stops the stream."""
        first = make_block({"a": 1})
        cid, _ = make_block({"a": 2})
        tampered = dag_cbor.encode({"a": 3})
        path = write_raw_car([section(*first), section(cid, tampered)])

        with CarReader(path) as reader:
            blocks = iter(reader)
            assert bytes(next(blocks).cid) == bytes(first[0])
            with pytest.raises(HashMismatchError) as exc_info:
                next(blocks)

        assert exc_info.value.position == 1
        assert bytes(exc_info.value.cid) == bytes(cid)


class TestCarWriter:
    """Test CarWriter."""

    def test_written_archive_reads_back(self, tmp_path, make_block):
        blocks = [make_block({"a": 1}), make_block(b"raw", codec="raw")]
        path = tmp_path / "out.car"

        with CarWriter(path, roots=[blocks[0][0]]) as writer:
            count = writer.write_all(blocks)

        assert count == 2
        with CarReader(path) as reader:
            assert [bytes(r) for r in reader.roots] == [bytes(blocks[0][0])]
            assert [(bytes(b.cid), b.data) for b in reader] == [(bytes(c), d) for c, d in blocks]


def test_iter_links_walks_nested_values(make_block):
    a, _ = make_block({"a": 1})
    b, _ = make_block({"b": 1})

    links = list(iter_links({"z": [a, {"inner": b}], "y": None}))

    assert [bytes(c) for c in links] == [bytes(a), bytes(b)]
