"""Content store interface: published files addressed by `{namespace}/{path}`."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class StoredObject:
    body: bytes
    content_type: Optional[str]
    etag: Optional[str]
    last_modified: Optional[datetime]

    @property
    def size(self) -> int:
        return len(self.body)


def object_key(namespace: str, path: str) -> str:
    return f"{namespace}/{path.lstrip('/')}"


class ContentStore(ABC):
    """Blocking interface; async callers go through a thread pool."""

    @abstractmethod
    def put(self, namespace: str, path: str, body: bytes, content_type: str) -> str:
        """Store an object and return its key."""

    @abstractmethod
    def get(self, namespace: str, path: str) -> Optional[StoredObject]:
        """Return the object with store-assigned metadata, or None when absent."""

    @abstractmethod
    def delete(self, namespace: str, path: str) -> bool:
        ...
