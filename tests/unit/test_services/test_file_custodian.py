"""Unit tests for listing and deleting temporary import files."""

import os
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from election_importer.lib.importer.errors import FileGroupNotFoundError, FilesInUseError, InvalidOperationError
from election_importer.services.file_service import (
    delete_file_group,
    job_directory,
    list_file_groups,
    uploads_directory,
)


def _scheduler(active: set[int] | None = None) -> MagicMock:
    scheduler = MagicMock()
    scheduler.is_active.side_effect = lambda job_id: job_id in (active or set())
    return scheduler


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    work = tmp_path / "work"
    job_2 = job_directory(work, 2)
    job_2.mkdir(parents=True)
    (job_2 / "source.zip").write_bytes(b"x" * 100)
    (job_2 / "extracted").mkdir()
    (job_2 / "extracted" / "votacao_SP.csv").write_bytes(b"y" * 50)
    job_10 = job_directory(work, 10)
    job_10.mkdir()
    (job_10 / "upload.csv").write_bytes(b"z" * 7)
    uploads = uploads_directory(work)
    uploads.mkdir()
    (uploads / "abc_partial.csv").write_bytes(b"p" * 3)
    (work / "stray.txt").write_text("not a group")
    (work / "job-abc").mkdir()
    return work


class TestListFileGroups:
    def test_missing_work_dir(self, tmp_path: Path) -> None:
        assert list_file_groups(tmp_path / "nope") == []

    def test_groups_ordered_with_uploads_last(self, work_dir: Path) -> None:
        groups = list_file_groups(work_dir)
        assert [(g.job_id, g.bucket) for g in groups] == [(2, None), (10, None), (None, "uploads")]

    def test_files_and_sizes(self, work_dir: Path) -> None:
        group = list_file_groups(work_dir)[0]
        assert [f.name for f in group.files] == ["extracted/votacao_SP.csv", "source.zip"]
        assert group.total_size == 150
        assert all(f.modified_at.tzinfo is not None for f in group.files)


class TestDeleteFileGroup:
    def test_delete_job_group(self, work_dir: Path) -> None:
        group = delete_file_group(work_dir, 2, scheduler=_scheduler())
        assert group.job_id == 2
        assert len(group.files) == 2
        assert not job_directory(work_dir, 2).exists()
        assert job_directory(work_dir, 10).exists()

    def test_delete_accepts_string_id(self, work_dir: Path) -> None:
        group = delete_file_group(work_dir, "10", scheduler=_scheduler())
        assert group.total_size == 7

    def test_active_job_refused(self, work_dir: Path) -> None:
        with pytest.raises(FilesInUseError):
            delete_file_group(work_dir, 2, scheduler=_scheduler({2}))
        assert job_directory(work_dir, 2).exists()

    def test_unknown_job(self, work_dir: Path) -> None:
        with pytest.raises(FileGroupNotFoundError):
            delete_file_group(work_dir, 99, scheduler=_scheduler())

    def test_invalid_target(self, work_dir: Path) -> None:
        with pytest.raises(InvalidOperationError):
            delete_file_group(work_dir, "everything", scheduler=_scheduler())

    def test_empty_uploads_bucket(self, work_dir: Path) -> None:
        group = delete_file_group(work_dir, "uploads", scheduler=_scheduler())
        assert group.bucket == "uploads"
        assert group.total_size == 3
        uploads = uploads_directory(work_dir)
        assert uploads.is_dir()
        assert list(uploads.iterdir()) == []

    def test_uploads_bucket_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FileGroupNotFoundError):
            delete_file_group(tmp_path, "uploads", scheduler=_scheduler())

    def test_recent_uploads_kept(self, work_dir: Path) -> None:
        uploads = uploads_directory(work_dir)
        old = uploads / "abc_partial.csv"
        stale = time.time() - 3600
        os.utime(old, (stale, stale))
        (uploads / "def_streaming.csv").write_bytes(b"s" * 5)

        group = delete_file_group(work_dir, "uploads", scheduler=_scheduler(), keep_newer_than=300)

        assert [f.name for f in group.files] == ["abc_partial.csv"]
        assert [p.name for p in uploads.iterdir()] == ["def_streaming.csv"]
