"""Tests for FailureRecorder record/flush behavior."""

import os
import threading

import pytest

from failure_recorder import FailureLogError, FailureRecord, FailureRecorder, failure_log_path


class TestFlush:

    def test_writes_one_line_per_record_and_clears(self, tmp_path):
        rec = FailureRecorder()
        rec.record("http://x/1.jpg", "a/1.jpg")
        rec.record("http://x/2.jpg", "a/2 with space.jpg")
        path = tmp_path / "train-00001.txt"

        written = rec.flush(str(path))

        assert written == 2
        assert path.read_text() == "http://x/1.jpg a/1.jpg\nhttp://x/2.jpg a/2 with space.jpg\n"
        assert rec.pending == 0

    def test_empty_flush_twice_creates_empty_file(self, tmp_path):
        rec = FailureRecorder()
        path = tmp_path / "empty.txt"

        assert rec.flush(str(path)) == 0
        assert rec.flush(str(path)) == 0
        assert path.read_text() == ""

    def test_empty_flush_clears_stale_log(self, tmp_path):
        path = tmp_path / "shard.txt"
        path.write_text("http://x/1.jpg 1.jpg\n")

        assert FailureRecorder().flush(str(path)) == 0
        assert path.read_text() == ""

    def test_empty_flush_after_records_does_not_repeat_them(self, tmp_path):
        rec = FailureRecorder()
        path = tmp_path / "shard.txt"
        rec.record("http://x/1.jpg", "1.jpg")
        assert rec.flush(str(path)) == 1

        assert rec.flush(str(path)) == 0
        assert rec.flush(str(path)) == 0
        assert path.read_text() == ""

    def test_non_empty_flush_replaces_old_log(self, tmp_path):
        path = tmp_path / "shard.txt"
        path.write_text("http://old 1.jpg\nhttp://old 2.jpg\nhttp://old 3.jpg\n")
        rec = FailureRecorder()
        rec.record("http://new", "9.jpg")

        rec.flush(str(path))

        assert path.read_text() == "http://new 9.jpg\n"

    def test_open_error_is_raised_with_records(self, tmp_path):
        rec = FailureRecorder()
        rec.record("http://x/1.jpg", "1.jpg")
        path = tmp_path / "missing-dir" / "shard.txt"

        with pytest.raises(FailureLogError) as exc_info:
            rec.flush(str(path))

        assert exc_info.value.records == [FailureRecord("http://x/1.jpg", "1.jpg")]
        assert exc_info.value.path == str(path)
        assert rec.pending == 0

    def test_empty_flush_open_error_is_raised(self, tmp_path):
        with pytest.raises(FailureLogError):
            FailureRecorder().flush(str(tmp_path / "missing-dir" / "shard.txt"))


class TestConcurrentRecord:

    def test_no_records_lost_across_threads(self, tmp_path):
        rec = FailureRecorder()

        def worker(n):
            for i in range(50):
                rec.record(f"http://x/{n}/{i}", f"{n}/{i}.jpg")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        path = tmp_path / "shard.txt"
        assert rec.flush(str(path)) == 1000
        lines = path.read_text().splitlines()
        assert len(lines) == 1000
        assert len(set(lines)) == 1000


def test_failure_log_path():
    assert failure_log_path("fail", "train-00001-of-03550") == os.path.join("fail", "train-00001-of-03550.txt")
