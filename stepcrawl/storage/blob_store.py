"""
Blob storage for extracted page content.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from urllib.parse import quote

from ..crawler.models import MAX_CRAWL_NAME_PART_BYTES as MAX_DIRECTORY_NAME_BYTES, PageContent
from ..utils.config import StorageConfig


MAX_SUFFIX_LENGTH = 10


class BlobStoreError(Exception):
    """Custom exception for blob storage operations."""
    pass


def page_key(crawl_name: str, url: str) -> str:
    """Key a page is stored under: the crawl name, then the url-encoded url."""
    return f"{crawl_name.strip('/')}/{quote(url, safe='')}.html"


def serialize_page(content: PageContent) -> bytes:
    return json.dumps(content.to_dict(), ensure_ascii=False).encode('utf-8')


class BlobStore:
    """Abstract base class for blob storage backends."""

    async def initialize(self):
        """Initialize the storage backend."""
        raise NotImplementedError

    async def put(self, key: str, data: bytes):
        """Store bytes under a key, replacing any previous value."""
        raise NotImplementedError

    async def get(self, key: str) -> Optional[bytes]:
        """Retrieve bytes by key."""
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


class FileBlobStore(BlobStore):
    """Stores blobs as files below a data directory, one file per key."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'total_size_bytes': 0
        }

    async def initialize(self):
        """Create the data directory."""
        try:
            self.data_directory.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"File blob store initialized at {self.data_directory}")
        except OSError as e:
            raise BlobStoreError(f"Failed to initialize file storage: {e}")

    def _get_file_path(self, key: str) -> Path:
        """
        Map a key to a file below the data directory. Directory segments are kept;
        the file name is the sha256 of the whole key, fanned out by its first two
        hex digits, so arbitrarily long urls map to short file names.
        """
        parts = key.split('/')
        if not key or key.startswith('/') or any(part in ('', '.', '..') for part in parts):
            raise BlobStoreError(f"Invalid blob key: {key!r}")
        if any(len(part.encode('utf-8')) > MAX_DIRECTORY_NAME_BYTES for part in parts[:-1]):
            raise BlobStoreError(f"Invalid blob key, directory name too long: {key!r}")

        key_hash = hashlib.sha256(key.encode('utf-8')).hexdigest()
        suffix = Path(parts[-1]).suffix
        if len(suffix) > MAX_SUFFIX_LENGTH:
            suffix = ''
        return self.data_directory.joinpath(*parts[:-1], key_hash[:2], f"{key_hash}{suffix}")

    async def put(self, key: str, data: bytes):
        file_path = self._get_file_path(key)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so a retried step never leaves a truncated file
            tmp_path = file_path.with_name(file_path.name + '.tmp')
            tmp_path.write_bytes(data)
            tmp_path.replace(file_path)
        except OSError as e:
            raise BlobStoreError(f"Error storing blob {key}: {e}")

        self.stats['total_stored'] += 1
        self.stats['total_size_bytes'] += len(data)
        self.logger.debug(f"Stored blob {file_path}")

    async def get(self, key: str) -> Optional[bytes]:
        file_path = self._get_file_path(key)
        if not file_path.exists():
            return None
        try:
            return file_path.read_bytes()
        except OSError as e:
            raise BlobStoreError(f"Error reading blob {key}: {e}")

    async def exists(self, key: str) -> bool:
        return self._get_file_path(key).exists()

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        self.logger.debug(f"File blob store closed: {self.stats}")


def create_blob_store(config: StorageConfig) -> BlobStore:
    """Build the blob store for a storage configuration."""
    return FileBlobStore(config.data_directory)
