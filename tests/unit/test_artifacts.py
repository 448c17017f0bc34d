#!/usr/bin/env python3
"""
Unit tests for the artifact store
"""

import os
import sys
import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from gameserver.artifacts import ArtifactStore, DownloadedArtifact

FIXED_TIME = 1704326400.5  # 2024-01-04T00:00:00.500Z


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(
        download_dir=str(tmp_path / "downloads"),
        retention=2,
        clock=lambda: FIXED_TIME,
        token=lambda: "abcd1234",
    )


def _touch(directory: Path, name: str, mtime: float) -> Path:
    path = directory / name
    path.write_bytes(b"x")
    os.utime(path, (mtime, mtime))
    return path


class TestFilenames:

    def test_directory_gets_zip_extension(self, store):
        name = store.generate_filename("alpha", "world", "/opt/mc/world", is_directory=True)
        assert name == "alpha_world_1704326400500_abcd1234.zip"

    def test_file_keeps_original_extension(self, store):
        assert store.generate_filename("alpha", "ops", "/opt/mc/ops.json") == "alpha_ops_1704326400500_abcd1234.json"

    def test_file_without_extension(self, store):
        assert store.generate_filename("alpha", "log", "/var/log/latest") == "alpha_log_1704326400500_abcd1234"

    def test_names_unique_within_same_millisecond(self, tmp_path):
        store = ArtifactStore(download_dir=str(tmp_path), clock=lambda: FIXED_TIME)
        names = {store.generate_filename("alpha", "world", "/w", True) for _ in range(1000)}
        assert len(names) == 1000
        assert all(len(n.split("_")[3]) == len("00000000.zip") for n in names)

    def test_download_dir_created(self, tmp_path):
        target = tmp_path / "a" / "b"
        ArtifactStore(download_dir=str(target))
        assert target.is_dir()


class TestUrls:

    def test_configured_base_url(self, tmp_path):
        store = ArtifactStore(download_dir=str(tmp_path), base_url="https://files.example.com/files/")
        assert store.url_for("x.zip") == "https://files.example.com/files/x.zip"

    def test_fallback_local_address(self, tmp_path):
        store = ArtifactStore(download_dir=str(tmp_path), port=9000)
        assert store.url_for("x.zip") == "http://localhost:9000/files/x.zip"

    def test_record_describes_download(self, store):
        artifact = store.record("alpha", "world", "alpha_world_1_abcd1234.zip", "World save")
        assert isinstance(artifact, DownloadedArtifact)
        assert artifact.url.endswith("/files/alpha_world_1_abcd1234.zip")
        assert artifact.downloaded_at == datetime.fromtimestamp(FIXED_TIME, tz=timezone.utc)
        assert artifact.local_path == store.local_path("alpha_world_1_abcd1234.zip")


class TestCleanup:

    def test_keeps_newest_by_mtime(self, store):
        d = store.download_dir
        for i in range(4):
            _touch(d, f"alpha_world_{1000 + i}_{i:08x}.zip", mtime=1000 + i)

        deleted = store.cleanup_old_artifacts("alpha", "world")

        assert sorted(deleted) == ["alpha_world_1000_00000000.zip", "alpha_world_1001_00000001.zip"]
        assert sorted(os.listdir(d)) == ["alpha_world_1002_00000002.zip", "alpha_world_1003_00000003.zip"]

    def test_explicit_retention_overrides_default(self, store):
        d = store.download_dir
        for i in range(3):
            _touch(d, f"alpha_world_{1000 + i}_{i:08x}.zip", mtime=1000 + i)
        assert len(store.cleanup_old_artifacts("alpha", "world", retention=1)) == 2

    def test_other_keys_and_servers_untouched(self, store):
        d = store.download_dir
        for i in range(3):
            _touch(d, f"alpha_world_{1000 + i}_{i:08x}.zip", mtime=1000 + i)
            _touch(d, f"alpha_world_backup_{1000 + i}_{i:08x}.zip", mtime=1000 + i)
            _touch(d, f"beta_world_{1000 + i}_{i:08x}.zip", mtime=1000 + i)
        _touch(d, "notes.txt", mtime=1)

        store.cleanup_old_artifacts("alpha", "world", retention=1)

        remaining = os.listdir(d)
        assert sum(n.startswith("alpha_world_backup_") for n in remaining) == 3
        assert sum(n.startswith("beta_world_") for n in remaining) == 3
        assert "notes.txt" in remaining
        assert "alpha_world_1002_00000002.zip" in remaining

    def test_delete_failure_is_logged_not_raised(self, store):
        d = store.download_dir
        for i in range(3):
            _touch(d, f"alpha_world_{1000 + i}_{i:08x}.zip", mtime=1000 + i)

        with patch.object(Path, "unlink", side_effect=OSError("busy")):
            deleted = store.cleanup_old_artifacts("alpha", "world", retention=1)

        assert deleted == []
        assert len(os.listdir(d)) == 3


    @pytest.mark.parametrize("error", [
        PermissionError(13, "Permission denied"),
        NotADirectoryError(20, "Not a directory"),
    ])
    def test_unreadable_directory_is_logged_not_raised(self, store, error):
        with patch("gameserver.artifacts.os.listdir", side_effect=error):
            assert store.cleanup_old_artifacts("alpha", "world", retention=1) == []
            assert store.list_artifacts("alpha") == []


class TestListing:

    def test_list_artifacts_newest_first(self, store):
        d = store.download_dir
        _touch(d, "alpha_world_1704067200000_00000001.zip", mtime=100)
        _touch(d, "alpha_ops_1704153600000_00000002.json", mtime=200)
        _touch(d, "beta_world_1704153600000_00000003.zip", mtime=300)

        files = store.list_artifacts("alpha", {"world": "World save"})

        assert [f.artifact_key for f in files] == ["ops", "world"]
        assert files[1].description == "World save"
        assert files[0].description == "ops"
        assert files[1].downloaded_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert files[0].to_dict()["downloaded_at"].startswith("2024-01-02")

    def test_list_empty(self, store):
        assert store.list_artifacts("alpha") == []
