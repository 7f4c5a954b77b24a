import hashlib
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from app.modules.storage.base import ContentStore, StoredObject, object_key


class InMemoryContentStore(ContentStore):
    """Process-local content store for development and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._objects: Dict[str, StoredObject] = {}

    def put(self, namespace: str, path: str, body: bytes, content_type: str) -> str:
        key = object_key(namespace, path)
        stored = StoredObject(
            body=bytes(body),
            content_type=content_type,
            etag=f'"{hashlib.md5(body).hexdigest()}"',
            last_modified=datetime.now(timezone.utc),
        )
        with self._lock:
            self._objects[key] = stored
        return key

    def get(self, namespace: str, path: str) -> Optional[StoredObject]:
        with self._lock:
            return self._objects.get(object_key(namespace, path))

    def delete(self, namespace: str, path: str) -> bool:
        with self._lock:
            return self._objects.pop(object_key(namespace, path), None) is not None

    def keys(self, namespace: Optional[str] = None) -> list:
        prefix = f"{namespace}/" if namespace else ""
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))
