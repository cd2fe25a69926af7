"""
Storage abstraction layer for local and GCS object operations.

Provides a small key/bytes interface used by the template store:
- Local filesystem storage (development, tests)
- Google Cloud Storage (production)

The backend is selected from configuration by ``get_storage_backend``.
"""
from __future__ import annotations
from pathlib import Path
from typing import Optional

from core.logger import get_logger
from core.utils import safe_write

log = get_logger("core/storage")


class StorageBackend:
    """
    Abstract storage interface.

    Keys are forward-slash separated relative paths. All implementations
    must override every method.
    """

    def write_bytes(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key`` and return its location."""
        raise NotImplementedError(f"{self.__class__.__name__}.write_bytes() must be implemented")

    def read_bytes(self, key: str) -> bytes:
        """Return the bytes stored under ``key``; FileNotFoundError if absent."""
        raise NotImplementedError(f"{self.__class__.__name__}.read_bytes() must be implemented")

    def delete(self, key: str) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.delete() must be implemented")

    def list_keys(self, prefix: str = "") -> list[str]:
        """List stored keys, optionally filtered by prefix, in sorted order."""
        raise NotImplementedError(f"{self.__class__.__name__}.list_keys() must be implemented")


class LocalStorage(StorageBackend):
    """
    Local filesystem storage rooted at ``base_dir``.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            log.info(f"Local storage initialized: base_dir={self.base_dir}")
        except Exception as e:
            log.error(f"Failed to create local storage directory {self.base_dir}: {e}")
            raise

    def write_bytes(self, key: str, data: bytes) -> str:
        full_path = self.base_dir / key
        safe_write(full_path, data)
        log.debug(f"Saved object to local storage: path={full_path} size={len(data)} bytes")
        return str(full_path)

    def read_bytes(self, key: str) -> bytes:
        full_path = self.base_dir / key

        if not full_path.exists():
            log.error(f"File not found in local storage: {full_path}")
            raise FileNotFoundError(f"File not found: {key}")

        try:
            content = full_path.read_bytes()
        except Exception as e:
            log.error(f"Failed to read file from local storage: path={key} error={e}")
            raise IOError(f"Failed to read file from local storage: {e}")

        log.debug(f"Read file from local storage: path={full_path} size={len(content)} bytes")
        return content

    def delete(self, key: str) -> None:
        full_path = self.base_dir / key

        if not full_path.exists():
            log.warning(f"File not found for deletion: {full_path}")
            return

        try:
            full_path.unlink()
            log.info(f"Deleted file from local storage: {full_path}")
        except Exception as e:
            log.error(f"Failed to delete file from local storage: path={key} error={e}")
            raise IOError(f"Failed to delete file from local storage: {e}")

    def list_keys(self, prefix: str = "") -> list[str]:
        search_path = self.base_dir / prefix if prefix else self.base_dir

        if not search_path.exists():
            log.debug(f"Search path does not exist: {search_path}")
            return []

        keys = []
        for item in search_path.rglob("*"):
            # Skip in-flight temp files from safe_write
            if item.is_file() and not item.name.startswith("."):
                keys.append(item.relative_to(self.base_dir).as_posix())

        log.debug(f"Listed {len(keys)} files from local storage with prefix '{prefix}'")
        return sorted(keys)


class GCSStorage(StorageBackend):
    """
    Google Cloud Storage backend; objects live in ``bucket_name``.
    """

    def __init__(self, bucket_name: str):
        try:
            from google.cloud import storage

            self.client = storage.Client()
            self.bucket = self.client.bucket(bucket_name)
            self.bucket_name = bucket_name

            if not self.bucket.exists():
                log.warning(f"GCS bucket does not exist: {bucket_name}")

            log.info(f"GCS storage initialized: bucket={bucket_name}")

        except Exception as e:
            log.error(f"Failed to initialize GCS storage: bucket={bucket_name} error={e}")
            raise RuntimeError(f"Failed to initialize GCS storage: {e}")

    def write_bytes(self, key: str, data: bytes) -> str:
        try:
            blob = self.bucket.blob(key)
            blob.upload_from_string(data, content_type="application/json")
        except Exception as e:
            log.error(f"Failed to upload object to GCS: destination={key} error={e}")
            raise IOError(f"Failed to upload object to GCS: {e}")

        gcs_url = f"gs://{self.bucket_name}/{key}"
        log.info(f"Uploaded object to GCS: url={gcs_url} size={len(data)} bytes")
        return gcs_url

    def read_bytes(self, key: str) -> bytes:
        blob = self.bucket.blob(key)

        if not blob.exists():
            log.error(f"File not found in GCS: gs://{self.bucket_name}/{key}")
            raise FileNotFoundError(f"File not found in GCS: {key}")

        try:
            content = blob.download_as_bytes()
        except Exception as e:
            log.error(f"Failed to download object from GCS: path={key} error={e}")
            raise IOError(f"Failed to download object from GCS: {e}")

        log.debug(f"Downloaded object from GCS: path=gs://{self.bucket_name}/{key} size={len(content)} bytes")
        return content

    def delete(self, key: str) -> None:
        blob = self.bucket.blob(key)
        if not blob.exists():
            log.warning(f"Object not found for deletion: gs://{self.bucket_name}/{key}")
            return
        try:
            blob.delete()
            log.info(f"Deleted object from GCS: gs://{self.bucket_name}/{key}")
        except Exception as e:
            log.error(f"Failed to delete object from GCS: path={key} error={e}")
            raise IOError(f"Failed to delete object from GCS: {e}")

    def list_keys(self, prefix: str = "") -> list[str]:
        try:
            keys = [blob.name for blob in self.client.list_blobs(self.bucket_name, prefix=prefix or None)]
        except Exception as e:
            log.error(f"Failed to list objects from GCS: prefix={prefix} error={e}")
            raise IOError(f"Failed to list objects from GCS: {e}")

        log.debug(f"Listed {len(keys)} objects from GCS with prefix '{prefix}'")
        return sorted(keys)


def get_storage_backend(base_dir: Optional[Path] = None, bucket: Optional[str] = None) -> StorageBackend:
    """
    Pick the storage backend from configuration.

    A configured bucket (argument or ``TEMPLATE_BUCKET``) selects GCS;
    otherwise files live under ``base_dir`` (default: ``config.templates_dir``).

    Raises:
        RuntimeError: If the backend cannot be initialized
    """
    from core.config import config

    bucket = bucket or config.template_bucket
    try:
        if bucket:
            log.info(f"Using GCS storage backend: bucket={bucket}")
            return GCSStorage(bucket)

        base = Path(base_dir or config.templates_dir)
        log.info(f"Using local storage backend: base_dir={base}")
        return LocalStorage(base)

    except Exception as e:
        log.error(f"Failed to initialize storage backend: {e}")
        raise RuntimeError(f"Failed to initialize storage backend: {e}")
