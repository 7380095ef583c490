"""Write-once, content-addressed storage for record ciphertext."""

from healthvault.modules.blobstore.client import (
    BlobStoreClient,
    HttpBlobStoreClient,
    InMemoryBlobStore,
)
from healthvault.modules.blobstore.models import BlobMetadata, BlobReference

__all__ = [
    "BlobMetadata",
    "BlobReference",
    "BlobStoreClient",
    "HttpBlobStoreClient",
    "InMemoryBlobStore",
]
