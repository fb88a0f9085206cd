from episode_store.repositories.blobs import BlobRecord, BlobStore
from episode_store.repositories.documents import DocumentStore, project_key
from episode_store.repositories.state import MetadataIndex, RootStateRepository

__all__ = [
    "BlobRecord",
    "BlobStore",
    "DocumentStore",
    "MetadataIndex",
    "RootStateRepository",
    "project_key",
]
