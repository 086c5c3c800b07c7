"""Blob store adapters and collaborator protocols."""

from efd_ingestion.adapters.base import BlobStore, ViewRefresher
from efd_ingestion.adapters.http_blob import HttpBlobStore
from efd_ingestion.adapters.local_blob import LocalBlobStore

__all__ = ["BlobStore", "ViewRefresher", "LocalBlobStore", "HttpBlobStore"]
