"""Tests for the upload watcher's path mapping and processing."""

from unittest.mock import MagicMock

import pytest

from conftest import BUCKET, candidate
from lotg.core.errors import TransientStoreError
from lotg.core.ingest import upload_key
from lotg.core.jobs import JobLifecycleManager
from lotg.core.watch_folder import UploadWatcher


@pytest.fixture
def watcher(make_pipeline, object_store):
    seen = []
    watcher = UploadWatcher(
        object_store.root,
        make_pipeline([candidate(confidence=0.99)]),
        debounce_time=0.0,
        settle_time=0.0,
        callback=lambda key, result: seen.append((key, result)),
    )
    watcher.seen = seen
    return watcher


class TestLocationForPath:

    def test_maps_upload_path_to_bucket_and_key(self, watcher, object_store):
        path = object_store.root / BUCKET / "uploads" / "JOB9" / "exam.pdf"
        assert watcher.location_for_path(path) == (BUCKET, "uploads/JOB9/exam.pdf")

    def test_pdf_suffix_is_case_insensitive(self, watcher, object_store):
        path = object_store.root / BUCKET / "uploads" / "JOB9" / "EXAM.PDF"
        assert watcher.location_for_path(path) == (BUCKET, "uploads/JOB9/EXAM.PDF")

    @pytest.mark.parametrize("relative", [
        "exams/uploads/JOB9/notes.txt",
        "exams/inbox/JOB9/exam.pdf",
        "exam.pdf",
    ])
    def test_ignores_non_uploads(self, watcher, object_store, relative):
        assert watcher.location_for_path(object_store.root / relative) is None

    def test_ignores_paths_outside_root(self, watcher, tmp_path):
        assert watcher.location_for_path(tmp_path / "elsewhere" / "uploads" / "J" / "x.pdf") is None


class TestProcess:

    def test_processes_ready_upload(self, watcher, upload, object_store, store):
        key = upload("JOB9")
        path = object_store.path_for(BUCKET, key)

        result = watcher.process(BUCKET, key, path)

        assert result.success
        assert JobLifecycleManager(store).get("JOB9").approved_count == 1
        assert watcher.get_stats()["files_processed"] == 1
        assert watcher.seen[0][0] == key

    def test_empty_file_is_not_ready(self, watcher, object_store):
        key = upload_key("JOB9", "exam.pdf")
        path = object_store.path_for(BUCKET, key)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"")

        assert watcher.process(BUCKET, key, path) is None
        assert watcher.get_stats()["files_failed"] == 1

    def test_pipeline_error_is_counted_and_key_released(self, upload, object_store):
        pipeline = MagicMock()
        pipeline.process_upload.side_effect = TransientStoreError("database unavailable")
        watcher = UploadWatcher(object_store.root, pipeline, debounce_time=0.0, settle_time=0.0)
        key = upload("JOB9")
        watcher._seen_keys.add(key)

        assert watcher.process(BUCKET, key, object_store.path_for(BUCKET, key)) is None
        assert watcher.get_stats()["files_failed"] == 1
        assert key not in watcher._seen_keys
