"""
CARv1 archive reading and writing.

A CARv1 file is a varint-framed sequence:

    [varint len][DAG-CBOR header {"version": 1, "roots": [CID, ...]}]
    [varint len][CID bytes][block bytes]
    [varint len][CID bytes][block bytes]
    ...

CarReader parses only this framing. CIDs, multihashes and DAG-CBOR values are
handled by the multiformats and dag-cbor libraries. Every block is verified
against its CID before it is yielded; a block that fails verification stops
the iteration, because skipping it would silently break round-trip.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import dag_cbor
from dag_cbor.decoding import CBORDecodingError
from multiformats import CID, varint

from carpet.errors import CorruptArchiveError, HashMismatchError

logger = logging.getLogger(__name__)

DAG_CBOR = "dag-cbor"
RAW = "raw"

# Longest unsigned varint multiformats accepts
_MAX_VARINT_BYTES = 9

# CIDv0 is a bare sha2-256 multihash: 0x12 0x20 + 32 digest bytes
_CIDV0_PREFIX = b"\x12\x20"
_CIDV0_LENGTH = 34

_UNDECODED = object()


def verify_block(cid: CID, data: bytes) -> bool:
    """Return True if ``data`` hashes to ``cid``'s multihash."""
    size = len(cid.raw_digest)
    return cid.hashfun.digest(data, size=size) == cid.digest


def decode_cid(raw: bytes) -> CID:
    """
    Decode a binary CID.

    Binary CIDs carry no multibase, so CIDv1 is given the canonical base32
    string form; CIDv0 is always base58btc.
    """
    cid = CID.decode(raw)
    if cid.version == 1:
        cid = cid.set(base="base32")
    return cid


def iter_links(value: Any) -> Iterator[CID]:
    """Yield every CID inside a decoded IPLD value, depth first."""
    if isinstance(value, CID):
        yield value
    elif isinstance(value, dict):
        for key in sorted(value):
            yield from iter_links(value[key])
    elif isinstance(value, list):
        for item in value:
            yield from iter_links(item)


@dataclass(eq=False)
class Block:
    """
    One verified block from an archive.

    ``position`` is the zero-based index of the block in the archive. The
    DAG-CBOR value is decoded on first use and cached.
    """

    cid: CID
    data: bytes
    position: int
    _value: Any = field(default=_UNDECODED, repr=False)

    @property
    def codec(self) -> str:
        return self.cid.codec.name

    def decode(self) -> Any:
        """
        Decode a DAG-CBOR block.

        Raises:
            ValueError: If the block is not DAG-CBOR
            CBORDecodingError: If the bytes are not valid DAG-CBOR
        """
        if self._value is _UNDECODED:
            if self.codec != DAG_CBOR:
                raise ValueError(f"Block {self.cid} has codec {self.codec}, not {DAG_CBOR}")
            self._value = dag_cbor.decode(self.data)
        return self._value

    @property
    def links(self) -> List[CID]:
        """Links declared by the block (empty for non DAG-CBOR or undecodable blocks)."""
        if self.codec != DAG_CBOR:
            return []
        try:
            return list(iter_links(self.decode()))
        except CBORDecodingError:
            return []


def _split_cid(section: bytes) -> Tuple[CID, bytes]:
    """Split a section into its CID and the block bytes that follow."""
    if section[:2] == _CIDV0_PREFIX:
        length = _CIDV0_LENGTH
    else:
        # version, codec, multihash code, digest length
        view = memoryview(section)
        consumed = 0
        for _ in range(3):
            _, n, view = varint.decode_raw(view)
            consumed += n
        digest_size, n, view = varint.decode_raw(view)
        length = consumed + n + digest_size
    if length > len(section):
        raise ValueError("CID extends past end of section")
    return decode_cid(bytes(section[:length])), bytes(section[length:])


class CarReader:
    """
    Streaming reader for CARv1 archives.

    Produces a lazy, single-pass sequence of verified blocks.

    Example:
        >>> reader = CarReader("all.car")
        >>> reader.roots
        [CID('base32', 1, 'dag-cbor', '1220...')]
        >>> for block in reader:
        ...     print(block.cid, len(block.data), block.links)
    """

    def __init__(self, source: Union[str, Path, IO[bytes]]):
        """
        Open an archive and parse its header.

        Args:
            source: Path to a CAR file or a binary file object

        Raises:
            CorruptArchiveError: If the header is missing or malformed
        """
        if isinstance(source, (str, Path)):
            self._stream = open(source, "rb")
            self._owns_stream = True
        else:
            self._stream = source
            self._owns_stream = False
        self._offset = 0
        self._consumed = False
        self.version, self.roots = self._read_header()

    def __enter__(self) -> "CarReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_stream:
            self._stream.close()

    def _read_exact(self, n: int, position: Optional[int]) -> bytes:
        data = self._stream.read(n)
        if len(data) != n:
            raise CorruptArchiveError(
                f"Truncated archive: expected {n} bytes, got {len(data)}",
                position=position,
                offset=self._offset,
            )
        self._offset += n
        return data

    def _read_varint(self, position: Optional[int]) -> Optional[int]:
        """Read one varint. Returns None on a clean end of file."""
        start = self._offset
        buf = bytearray()
        while True:
            byte = self._stream.read(1)
            if not byte:
                if not buf:
                    return None
                raise CorruptArchiveError("Truncated varint", position=position, offset=start)
            buf += byte
            self._offset += 1
            if not byte[0] & 0x80:
                break
            if len(buf) >= _MAX_VARINT_BYTES:
                raise CorruptArchiveError("Varint too long", position=position, offset=start)
        try:
            return varint.decode(bytes(buf))
        except ValueError as e:
            raise CorruptArchiveError(f"Invalid varint: {e}", position=position, offset=start) from e

    def _read_header(self) -> Tuple[int, List[CID]]:
        length = self._read_varint(None)
        if not length:
            raise CorruptArchiveError("Missing CAR header", offset=0)
        raw = self._read_exact(length, None)
        try:
            header = dag_cbor.decode(raw)
        except CBORDecodingError as e:
            raise CorruptArchiveError(f"Undecodable CAR header: {e}", offset=0) from e

        if not isinstance(header, dict) or "version" not in header:
            raise CorruptArchiveError("CAR header is not a map with a version", offset=0)
        version = header["version"]
        if version != 1:
            raise CorruptArchiveError(f"Unsupported CAR version: {version!r}", offset=0)
        roots = header.get("roots", [])
        if not isinstance(roots, list) or not all(isinstance(r, CID) for r in roots):
            raise CorruptArchiveError("CAR header roots must be a list of CIDs", offset=0)
        return version, roots

    def __iter__(self) -> Iterator[Block]:
        if self._consumed:
            raise RuntimeError("CarReader is single-pass; open the archive again to re-read it")
        self._consumed = True
        return self._iter_blocks()

    def _iter_blocks(self) -> Iterator[Block]:
        position = 0
        while True:
            section_offset = self._offset
            length = self._read_varint(position)
            if length is None:
                break
            if length == 0:
                raise CorruptArchiveError("Empty section", position=position, offset=section_offset)
            section = self._read_exact(length, position)
            try:
                cid, data = _split_cid(section)
            except (KeyError, ValueError) as e:
                raise CorruptArchiveError(
                    f"Invalid CID: {e}", position=position, offset=section_offset
                ) from e

            try:
                valid = verify_block(cid, data)
            except (KeyError, ValueError) as e:
                raise CorruptArchiveError(
                    f"Cannot verify {cid}: {e}", position=position, offset=section_offset
                ) from e
            if not valid:
                raise HashMismatchError(position, cid)

            yield Block(cid=cid, data=data, position=position)
            position += 1

        logger.debug("Read %d blocks from archive", position)


class CarWriter:
    """
    Writes blocks to a CARv1 archive.

    Example:
        >>> with CarWriter("subset.car", roots=[root_cid]) as writer:
        ...     writer.write(cid, data)
    """

    def __init__(self, dest: Union[str, Path, IO[bytes]], roots: Sequence[CID] = ()):
        if isinstance(dest, (str, Path)):
            self._stream = open(dest, "wb")
            self._owns_stream = True
        else:
            self._stream = dest
            self._owns_stream = False
        header = dag_cbor.encode({"version": 1, "roots": list(roots)})
        self._stream.write(varint.encode(len(header)) + header)
        self.count = 0

    def __enter__(self) -> "CarWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def write(self, cid: CID, data: bytes) -> None:
        cid_bytes = bytes(cid)
        self._stream.write(varint.encode(len(cid_bytes) + len(data)))
        self._stream.write(cid_bytes)
        self._stream.write(data)
        self.count += 1

    def write_all(self, blocks: Iterable[Tuple[CID, bytes]]) -> int:
        for cid, data in blocks:
            self.write(cid, data)
        return self.count

    def close(self) -> None:
        if self._owns_stream:
            self._stream.close()
        else:
            self._stream.flush()
