"""
Tests for carpet.storage.writer module.

Covers:
- Flush thresholds (rows and bytes) and segment numbering
- Index and manifest written by close()
- Encoder failure isolation per bucket
- abort() keeping only finalized segments
"""

import json

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from carpet.archive.car import Block
from carpet.config import IngestConfig
from carpet.errors import EncodeError
from carpet.schema import project
from carpet.storage.index import Index, Manifest
from carpet.storage.writer import BucketWriter, write_segment


@pytest.fixture
def rows(make_block):
    """Factory: list of IPLD values -> projected rows."""

    def _rows(values):
        return [
            project(Block(cid=cid, data=data, position=i))
            for i, (cid, data) in enumerate(make_block(v) for v in values)
        ]

    return _rows


def _run(writer, rows):
    for row in rows:
        job = writer.append(row)
        if job is not None:
            writer.run_flush(job)


class TestFlushThresholds:
    """Test when buffers become segments."""

    def test_row_threshold(self, tmp_path, rows):
        writer = BucketWriter(tmp_path / "out", IngestConfig(flush_rows=2, workers=1))
        projected = rows([{"a": i} for i in range(5)])

        jobs = [writer.append(row) for row in projected]

        assert [job is not None for job in jobs] == [False, True, False, True, False]
        assert [job.segment for job in jobs if job is not None] == [0, 1]

    def test_byte_threshold(self, tmp_path, rows):
        projected = rows([{"s": "x" * 100} for _ in range(3)])
        config = IngestConfig(flush_bytes=projected[0].size * 2, workers=1)
        writer = BucketWriter(tmp_path / "out", config)

        jobs = [writer.append(row) for row in projected]

        assert [job is not None for job in jobs] == [False, True, False]

    def test_buckets_buffer_independently(self, tmp_path, rows):
        writer = BucketWriter(tmp_path / "out", IngestConfig(flush_rows=2, workers=1))
        projected = rows([{"a": 1}, {"b": 1}, {"a": 2}])

        jobs = [writer.append(row) for row in projected]

        assert jobs[:2] == [None, None]
        assert jobs[2].bucket_id == projected[0].bucket_id
        assert [bytes(r.cid) for r in jobs[2].rows] == [bytes(projected[0].cid), bytes(projected[2].cid)]


class TestClose:
    """Test the finished bundle layout."""

    def test_segments_index_and_manifest(self, tmp_path, rows):
        out = tmp_path / "out"
        writer = BucketWriter(out, IngestConfig(flush_rows=2, workers=1))
        projected = rows([{"a": i} for i in range(5)] + [{"b": "x"}])

        _run(writer, projected)
        summary = writer.close(stats={"blocks_read": 6})

        bucket_a = projected[0].bucket_id
        assert summary.complete
        assert summary.rows == 6
        assert summary.segments == 4
        assert sorted(summary.succeeded) == sorted({bucket_a, projected[5].bucket_id})

        manifest = Manifest.read(out / "manifest.json")
        assert manifest.complete
        assert manifest.stats == {"blocks_read": 6}
        assert [s.rows for s in manifest.buckets[bucket_a].segments] == [2, 2, 1]
        assert (out / "buckets" / bucket_a / "seg_0002.parquet").exists()

        index = Index(out / "index.parquet")
        assert len(index) == 6
        keys = list(index)
        assert keys == sorted(keys)
        entry = index.lookup(bytes(projected[4].cid))
        assert (entry.bucket, entry.segment, entry.row) == (bucket_a, 2, 0)

    def test_segment_file_is_typed(self, tmp_path, rows):
        out = tmp_path / "out"
        writer = BucketWriter(out, IngestConfig(workers=1))
        projected = rows([{"a": 1, "b": "x"}])

        _run(writer, projected)
        writer.close()

        table = pq.read_table(out / "buckets" / projected[0].bucket_id / "seg_0000.parquet")
        assert table.schema.field("data").type == pa.struct([("a", pa.int64()), ("b", pa.string())])
        assert table.column("data").to_pylist() == [{"a": 1, "b": "x"}]

    def test_manifest_is_json(self, tmp_path, rows):
        out = tmp_path / "out"
        writer = BucketWriter(out, IngestConfig(workers=1))
        _run(writer, rows([{"a": 1}]))
        writer.close()

        data = json.loads((out / "manifest.json").read_text())

        assert data["version"] == 1
        assert data["complete"] is True

    def test_refuses_existing_bundle(self, tmp_path):
        out = tmp_path / "out"
        writer = BucketWriter(out, IngestConfig(workers=1))
        writer.close()

        with pytest.raises(FileExistsError):
            BucketWriter(out)

    def test_closed_writer_rejects_rows(self, tmp_path, rows):
        writer = BucketWriter(tmp_path / "out", IngestConfig(workers=1))
        writer.close()

        with pytest.raises(RuntimeError):
            writer.append(rows([{"a": 1}])[0])


class TestEncodeFailure:
    """A failing encoder fails its bucket only."""

    def test_failed_bucket_is_isolated(self, tmp_path, rows):
        out = tmp_path / "out"
        projected = rows([{"good": 1}, {"bad": 1}, {"good": 2}, {"bad": 2}])
        bad_bucket = projected[1].bucket_id

        def encoder(table, path, config):
            if bad_bucket in str(path):
                raise pa.ArrowNotImplementedError("unsupported column")
            write_segment(table, path, config)

        writer = BucketWriter(out, IngestConfig(flush_rows=1, workers=1), encoder=encoder)
        _run(writer, projected)
        summary = writer.close()

        assert summary.succeeded == [projected[0].bucket_id]
        assert bad_bucket in summary.failed
        assert "ArrowNotImplementedError" in summary.failed[bad_bucket]
        assert not (out / "buckets" / bad_bucket).exists()

        manifest = Manifest.read(out / "manifest.json")
        assert bad_bucket in manifest.failed
        assert bad_bucket not in manifest.buckets
        assert len(Index(out / "index.parquet")) == 2

    def test_encoder_raising_encode_error(self, tmp_path, rows):
        projected = rows([{"a": 1}])

        def encoder(table, path, config):
            raise EncodeError(projected[0].bucket_id, "disk quota")

        writer = BucketWriter(tmp_path / "out", IngestConfig(workers=1), encoder=encoder)
        _run(writer, projected)
        summary = writer.close()

        assert summary.failed == {projected[0].bucket_id: str(EncodeError(projected[0].bucket_id, "disk quota"))}
        assert summary.rows == 0

    def test_any_encoder_exception_fails_the_bucket(self, tmp_path, rows):
        projected = rows([{"a": 1}])

        def encoder(table, path, config):
            raise RuntimeError("encoder crashed")

        writer = BucketWriter(tmp_path / "out", IngestConfig(flush_rows=1, workers=1), encoder=encoder)
        job = writer.append(projected[0])

        assert writer.run_flush(job) is None
        summary = writer.close()
        assert "RuntimeError: encoder crashed" in summary.failed[projected[0].bucket_id]

    def test_rows_after_failure_are_dropped(self, tmp_path, rows):
        projected = rows([{"a": 1}, {"a": 2}])

        def encoder(table, path, config):
            raise OSError("read-only file system")

        writer = BucketWriter(tmp_path / "out", IngestConfig(flush_rows=1, workers=1), encoder=encoder)
        first = writer.append(projected[0])
        assert writer.run_flush(first) is None

        assert writer.append(projected[1]) is None
        assert writer.pending_jobs() == []


class TestAbort:
    """Test abort() after a partial run."""

    def test_keeps_finalized_segments_only(self, tmp_path, rows):
        out = tmp_path / "out"
        writer = BucketWriter(out, IngestConfig(flush_rows=2, workers=1))
        projected = rows([{"a": i} for i in range(3)])

        _run(writer, projected)
        summary = writer.abort(stats={"blocks_read": 3})

        assert not summary.complete
        assert summary.rows == 2
        manifest = Manifest.read(out / "manifest.json")
        assert manifest.complete is False
        index = Index(out / "index.parquet")
        assert bytes(projected[2].cid) not in index
        assert bytes(projected[0].cid) in index

    def test_abort_twice_raises(self, tmp_path):
        writer = BucketWriter(tmp_path / "out", IngestConfig(workers=1))
        writer.abort()

        with pytest.raises(RuntimeError):
            writer.abort()
