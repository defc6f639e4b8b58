"""
Exception hierarchy for carpet.

Ingestion-fatal errors carry the position of the offending block in the
archive. Bucket-scoped and read-path errors carry the bucket id or CID they
concern, so callers can report them without aborting unrelated work.
"""

from typing import Optional


class CarpetError(Exception):
    """Base class for all carpet errors."""


class CorruptArchiveError(CarpetError):
    """The archive framing is invalid. Fatal to the whole ingestion run."""

    def __init__(self, message: str, position: Optional[int] = None, offset: Optional[int] = None):
        self.position = position
        self.offset = offset
        where = []
        if position is not None:
            where.append(f"block {position}")
        if offset is not None:
            where.append(f"byte offset {offset}")
        suffix = f" ({', '.join(where)})" if where else ""
        super().__init__(f"{message}{suffix}")


class HashMismatchError(CarpetError):
    """A block's recomputed hash disagrees with its CID. Fatal."""

    def __init__(self, position: int, cid):
        self.position = position
        self.cid = cid
        super().__init__(f"Hash mismatch for block {position}: {cid}")


class EncodeError(CarpetError):
    """The columnar encoder failed for one bucket. Sibling buckets are unaffected."""

    def __init__(self, bucket_id: str, reason: str):
        self.bucket_id = bucket_id
        self.reason = reason
        super().__init__(f"Failed to encode bucket '{bucket_id}': {reason}")


class NotFoundError(CarpetError, KeyError):
    """Requested CID is not in the bundle index."""

    def __init__(self, cid):
        self.cid = cid
        super().__init__(f"Block not found: {cid}")

    def __str__(self) -> str:
        return self.args[0]


class IntegrityError(CarpetError):
    """Rehydrated bytes do not hash to the requested CID."""

    def __init__(self, cid, reason: str = "rebuilt bytes do not match CID"):
        self.cid = cid
        self.reason = reason
        super().__init__(f"Integrity check failed for {cid}: {reason}")
