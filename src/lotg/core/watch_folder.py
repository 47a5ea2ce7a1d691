"""Upload trigger: watch the local upload area and hand new PDFs to the ingestion pipeline."""

import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from rich.console import Console
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .ingest import IngestionPipeline, IngestResult, UPLOAD_PREFIX
from .logging_config import get_audit_logger

logger = get_audit_logger("watch_folder")
console = Console()


class UploadWatcher(FileSystemEventHandler):
    """
    Turn files landing at ``<upload_root>/<bucket>/uploads/<jobId>/<file>.pdf``
    into ``process_upload(bucket, key)`` calls.

    Events are debounced per key; a key is ingested at most once per watcher.
    """

    def __init__(
        self,
        upload_root: Path,
        pipeline: IngestionPipeline,
        debounce_time: float = 2.0,
        settle_time: float = 0.5,
        callback: Optional[Callable[[str, IngestResult], None]] = None,
    ):
        self.upload_root = Path(upload_root)
        self.pipeline = pipeline
        self.debounce_time = debounce_time
        self.settle_time = settle_time
        self.callback = callback

        self.stats = {
            'start_time': datetime.now(),
            'files_detected': 0,
            'files_processed': 0,
            'files_skipped': 0,
            'files_failed': 0,
        }
        self._seen_keys = set()
        self._lock = threading.Lock()

        self.upload_root.mkdir(parents=True, exist_ok=True)
        logger.info("upload_watcher_initialized", upload_root=str(self.upload_root))

    def on_created(self, event):
        if event.is_directory:
            return
        self._handle_pdf_event("created", Path(event.src_path))

    def on_moved(self, event):
        """Handle files renamed into place after an upload completes."""
        if event.is_directory:
            return
        self._handle_pdf_event("moved", Path(event.dest_path))

    def location_for_path(self, file_path: Path) -> Optional[Tuple[str, str]]:
        """Map a file under the upload root to ``(bucket, key)``; None if it is not an upload."""
        if file_path.suffix.lower() != ".pdf":
            return None
        try:
            relative = Path(file_path).resolve().relative_to(self.upload_root.resolve())
        except ValueError:
            return None

        parts = relative.parts
        if len(parts) < 3 or parts[1] != UPLOAD_PREFIX:
            return None
        return parts[0], "/".join(parts[1:])

    def _handle_pdf_event(self, event_type: str, file_path: Path):
        location = self.location_for_path(file_path)
        if location is None:
            return
        bucket, key = location

        with self._lock:
            if key in self._seen_keys:
                self.stats['files_skipped'] += 1
                logger.debug("upload_already_seen", key=key)
                return
            self._seen_keys.add(key)
            self.stats['files_detected'] += 1

        logger.info("upload_detected", event_type=event_type, bucket=bucket, key=key)
        timer = threading.Timer(self.debounce_time, self.process, args=(bucket, key, file_path))
        timer.daemon = True
        timer.start()

    def _is_file_ready(self, file_path: Path) -> bool:
        """A file is ready once its size stops changing."""
        try:
            initial_size = file_path.stat().st_size
            time.sleep(self.settle_time)
            return initial_size == file_path.stat().st_size and initial_size > 0
        except OSError:
            return False

    def process(self, bucket: str, key: str, file_path: Path) -> Optional[IngestResult]:
        """Ingest one detected upload."""
        if not self._is_file_ready(file_path):
            logger.warning("upload_not_ready", key=key)
            with self._lock:
                self._seen_keys.discard(key)
                self.stats['files_failed'] += 1
            return None

        try:
            result = self.pipeline.process_upload(bucket, key)
        except Exception as e:
            # nothing was recorded for the key; let a later event retry it
            logger.error("upload_processing_failed", bucket=bucket, key=key, error=str(e))
            with self._lock:
                self._seen_keys.discard(key)
                self.stats['files_failed'] += 1
            return None

        with self._lock:
            if result.success:
                self.stats['files_processed'] += 1
            else:
                self.stats['files_failed'] += 1

        if self.callback:
            self.callback(key, result)
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Get current statistics."""
        uptime_seconds = (datetime.now() - self.stats['start_time']).total_seconds()
        return {
            'uptime_seconds': uptime_seconds,
            'files_detected': self.stats['files_detected'],
            'files_processed': self.stats['files_processed'],
            'files_skipped': self.stats['files_skipped'],
            'files_failed': self.stats['files_failed'],
        }

    def print_stats(self):
        stats = self.get_stats()
        console.print("\n[bold]Upload Watcher Statistics[/]")
        console.print(f"   [blue]Uptime:[/] {stats['uptime_seconds']:.1f}s")
        console.print(f"   [blue]Files Detected:[/] {stats['files_detected']}")
        console.print(f"   [blue]Files Processed:[/] {stats['files_processed']}")
        console.print(f"   [blue]Files Skipped:[/] {stats['files_skipped']}")
        console.print(f"   [blue]Files Failed:[/] {stats['files_failed']}")


class WatchFolderManager:
    """Owns the watchdog observer for one upload watcher."""

    def __init__(self, watcher: UploadWatcher):
        self.watcher = watcher
        self.observer = Observer()
        self.running = False

    def start(self):
        if self.running:
            logger.warning("watch_folder_already_running")
            return
        self.observer.schedule(self.watcher, str(self.watcher.upload_root), recursive=True)
        self.observer.start()
        self.running = True
        logger.info("watch_folder_started", upload_root=str(self.watcher.upload_root))

    def stop(self):
        if not self.running:
            return
        self.observer.stop()
        self.observer.join()
        self.running = False
        logger.info("watch_folder_stopped")

    def is_running(self) -> bool:
        return self.running
