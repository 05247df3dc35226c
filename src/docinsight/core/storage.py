"""Object storage for uploaded PDFs."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    """Opaque path -> bytes storage; paths are scoped as ``owner/document/file``."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> None:
        ...

    @abstractmethod
    def download(self, path: str) -> bytes:
        ...

    @abstractmethod
    def remove(self, path: str) -> None:
        ...


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed object store rooted at a directory."""

    def __init__(self, root_dir: Path):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        if not path:
            raise StorageError("Empty storage path")
        root = self.root_dir.resolve()
        target = (root / path).resolve()
        if root not in target.parents:
            raise StorageError(f"Storage path escapes the store root: {path}")
        return target

    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> None:
        """Write an object; refuses to overwrite an existing one."""
        target = self._resolve(path)
        if target.exists():
            raise StorageError(f"Object already exists: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to store {path}: {e}") from e
        logger.info(f"Saved {content_type} object to store: {path} ({len(data)} bytes)")

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to download {path}: {e}") from e

    def remove(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e
        logger.info(f"Removed object from store: {path}")
