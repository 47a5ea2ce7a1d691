"""Local object store holding uploaded exam PDFs under ``<root>/<bucket>/<key>``."""

import shutil
from pathlib import Path

from .errors import InvalidRequestError, NotFoundError
from .logging_config import get_audit_logger

logger = get_audit_logger("object_store")


class LocalObjectStore:
    """Bucket/key object access backed by a directory tree."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise InvalidRequestError(f"Key escapes the object store: {key}")
        return path

    def get(self, bucket: str, key: str) -> bytes:
        """Read an object's bytes."""
        path = self.path_for(bucket, key)
        if not path.is_file():
            raise NotFoundError(f"Object not found: {bucket}/{key}")
        data = path.read_bytes()
        if not data:
            raise NotFoundError(f"Empty object: {bucket}/{key}")
        return data

    def put_file(self, bucket: str, key: str, source: Path) -> Path:
        """Copy a local file into the store, keeping an existing object as is."""
        dest_path = self.path_for(bucket, key)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        if not dest_path.exists():
            shutil.copy2(source, dest_path)
            logger.info("object_saved", bucket=bucket, key=key, bytes=dest_path.stat().st_size)
        else:
            logger.info("object_exists", bucket=bucket, key=key)

        return dest_path
