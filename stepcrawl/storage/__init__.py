"""
Storage layer for the crawler: frontier, crawl history and page content.
"""

from .frontier import (
    FrontierStore, FrontierError, FrontierAlreadyExists, FrontierNotFound, FrontierNotDrained
)
from .history import HistoryRecorder, HistoryError
from .blob_store import BlobStore, FileBlobStore, BlobStoreError, create_blob_store, page_key

__all__ = [
    'FrontierStore', 'FrontierError', 'FrontierAlreadyExists', 'FrontierNotFound', 'FrontierNotDrained',
    'HistoryRecorder', 'HistoryError',
    'BlobStore', 'FileBlobStore', 'BlobStoreError', 'create_blob_store', 'page_key',
]
