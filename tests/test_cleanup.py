"""Tests for cleanup functionality."""

import os
import time

import pytest

from jobcache.cleanup import cleanup_snapshot_dirs, run_maintenance
from jobcache.store import JobResultStore


def _age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


class TestMaintenance:
    """Test the key sweep and temp file cleanup."""

    def test_removes_persistent_keys_and_stale_temp_files(self, store, fake_redis, output_dir):
        store.set_job("job1", {"owner_id": "o"})
        fake_redis.set(store.client.keys.build("job", "stray"), "{}")

        job_dir = output_dir / "job1"
        job_dir.mkdir()
        stale = job_dir / "coffee.json.1000-abcd1234.tmp"
        stale.write_text("[")
        _age(stale, 7200)
        snapshot = job_dir / "coffee.json"
        snapshot.write_text("[]")
        _age(snapshot, 7200)

        keys_removed, temp_removed = run_maintenance(store, output_dir)

        assert keys_removed == 1
        assert temp_removed == 1
        assert not stale.exists()
        assert snapshot.exists()
        assert store.get_job("job1") is not None

    def test_recent_temp_files_kept(self, store, output_dir):
        in_progress = output_dir / "coffee.json.2000-abcd1234.tmp"
        in_progress.write_text("[")

        assert run_maintenance(store, output_dir) == (0, 0)
        assert in_progress.exists()

    def test_custom_max_age(self, store, output_dir):
        tmp = output_dir / "coffee.json.1-a.tmp"
        tmp.write_text("[")
        _age(tmp, 120)

        assert run_maintenance(store, output_dir, max_age=60) == (0, 1)

    def test_handles_missing_output_dir(self, store, tmp_path):
        """A missing snapshot directory is not an error."""
        assert run_maintenance(store, tmp_path / "nonexistent") == (0, 0)

    def test_handles_unavailable_redis(self, disabled_client, output_dir):
        tmp = output_dir / "coffee.json.1-a.tmp"
        tmp.write_text("[")
        _age(tmp, 7200)

        assert run_maintenance(JobResultStore(disabled_client), output_dir) == (0, 1)


class TestCleanupSnapshotDirs:

    def test_scans_job_subdirectories(self, output_dir):
        for name in ("job1", "job2"):
            d = output_dir / name
            d.mkdir()
            tmp = d / "kw.json.1-a.tmp"
            tmp.write_text("[")
            _age(tmp, 7200)

        assert cleanup_snapshot_dirs(output_dir) == 2

    def test_missing_dir(self, tmp_path):
        assert cleanup_snapshot_dirs(tmp_path / "missing") == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
