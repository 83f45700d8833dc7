import logging
import os
import secrets
from pathlib import Path

from secureprint.config import settings
from secureprint.errors import BlobNotFound, EmptyBlob, StorageError
from secureprint.utils.filesystem import blob_name, is_blob_name

logger = logging.getLogger(__name__)


class BlobStore:
    """Ciphertext blobs on disk, one file per job.

    Paths handed out are bare file names relative to the uploads directory,
    derived from the (random) job id and never from user input.
    """

    def __init__(self, root: Path | None = None):
        self._root = root

    @property
    def root(self) -> Path:
        return self._root or settings.uploads_dir

    def _resolve(self, path: str) -> Path:
        if not is_blob_name(path):
            raise BlobNotFound(f"Invalid blob path: {path!r}")
        return self.root / path

    def put(self, job_id: str, content: bytes) -> str:
        """Write ``content`` atomically and return its path token."""
        if not content:
            raise EmptyBlob()
        name = blob_name(job_id)
        target = self.root / name
        tmp = self.root / f".{name}.{secrets.token_hex(4)}.tmp"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
            os.chmod(target, 0o400)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Could not write blob for job {job_id}") from exc
        return name

    def get(self, path: str) -> bytes:
        full_path = self._resolve(path)
        try:
            # The open handle keeps the bytes readable if a remove() races us.
            with open(full_path, "rb") as f:
                content = f.read()
        except FileNotFoundError:
            raise BlobNotFound() from None
        except OSError as exc:
            raise StorageError(f"Could not read blob {path}") from exc
        if not content:
            raise EmptyBlob()
        return content

    def stat(self, path: str) -> dict:
        full_path = self._resolve(path)
        try:
            return {"size": full_path.stat().st_size}
        except FileNotFoundError:
            raise BlobNotFound() from None

    def exists(self, path: str) -> bool:
        try:
            self.stat(path)
        except BlobNotFound:
            return False
        return True

    def remove(self, path: str) -> bool:
        """Delete a blob. Returns False if it was already gone."""
        full_path = self._resolve(path)
        try:
            full_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Could not remove blob {path}") from exc
        logger.debug("Removed blob %s", path)
        return True
