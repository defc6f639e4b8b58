"""Shared fixtures: build real CAR archives from IPLD values."""

import dag_cbor
import pytest
from multiformats import CID, multihash, varint

from carpet.archive.car import CarWriter


def cid_for(data: bytes, codec: str = "dag-cbor") -> CID:
    return CID("base32", 1, codec, multihash.digest(data, "sha2-256"))


@pytest.fixture
def make_block():
    """Factory: IPLD value (or raw bytes) -> (cid, bytes)."""

    def _make(value, codec="dag-cbor"):
        data = dag_cbor.encode(value) if codec == "dag-cbor" else value
        return cid_for(data, codec), data

    return _make


@pytest.fixture
def encoded_block():
    """Factory for blocks given as already-encoded bytes (e.g. non-canonical CBOR)."""

    def _make(data, codec="dag-cbor"):
        return cid_for(data, codec), data

    return _make


@pytest.fixture
def write_car(tmp_path):
    """Factory: list of (cid, bytes) -> path of a CARv1 file."""

    def _write(blocks, name="test.car", roots=None):
        path = tmp_path / name
        if roots is None:
            roots = [blocks[0][0]] if blocks else []
        with CarWriter(path, roots=roots) as writer:
            writer.write_all(blocks)
        return path

    return _write


@pytest.fixture
def write_raw_car(tmp_path):
    """Factory writing a valid header followed by arbitrary section bytes."""

    def _write(sections, name="raw.car", header=None):
        path = tmp_path / name
        if header is None:
            header = dag_cbor.encode({"version": 1, "roots": []})
        with open(path, "wb") as f:
            f.write(varint.encode(len(header)) + header)
            for section in sections:
                f.write(section)
        return path

    return _write


@pytest.fixture
def section():
    """Factory: (cid, bytes) -> framed CAR section."""

    def _section(cid, data):
        body = bytes(cid) + data
        return varint.encode(len(body)) + body

    return _section


@pytest.fixture
def sample_blocks(make_block):
    """Two {a:int, b:string} blocks and one {x:[int]} block."""
    return [
        make_block({"a": 1, "b": "one"}),
        make_block({"b": "two", "a": 2}),
        make_block({"x": [1, 2, 3]}),
    ]
