"""
Maps an incoming (host, path) to a published object.

The first DNS label of the host is the deployment namespace and the path is
the object path under it. Paths without a file extension fall back to the
namespace's index.html so client-side routed apps load on deep links.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Dict, Mapping, Optional

from app.config import settings
from app.core.content_types import DEFAULT_CONTENT_TYPE, content_type_for, has_file_extension
from app.core.exceptions import ResolutionError
from app.modules.deployments.namespace import MAX_LABEL_LENGTH, is_valid_namespace
from app.modules.storage.base import ContentStore, StoredObject

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "HEAD")
INDEX_PATH = "/index.html"
ROOT_DOMAIN_MESSAGE = "Root domain - no site attached"


@dataclass
class Resolution:
    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)


def _text(status_code: int, message: str) -> Resolution:
    return Resolution(status_code, message.encode(), {"Content-Type": "text/plain; charset=utf-8"})


def normalize_host(host: str) -> str:
    """Lower-case and drop any port and trailing dot."""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, never a site host
        return host.split("]", 1)[0] + "]"
    host = host.rsplit(":", 1)[0] if ":" in host else host
    return host.rstrip(".")


def namespace_from_host(host: str) -> Optional[str]:
    """
    Namespace label of a site host, or None for a bare domain.
    Raises ResolutionError when the label is not a valid namespace.
    """
    labels = normalize_host(host).split(".")
    if len(labels) < 3:
        return None
    namespace = labels[0]
    if len(namespace) > MAX_LABEL_LENGTH or not is_valid_namespace(namespace):
        raise ResolutionError("Invalid subdomain", status_code=400)
    return namespace


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _strip_weak(tag: str) -> str:
    tag = tag.strip()
    return tag[2:] if tag.startswith("W/") else tag


def etag_matches(if_none_match: str, etag: Optional[str]) -> bool:
    if not etag:
        return False
    candidates = [c.strip() for c in if_none_match.split(",") if c.strip()]
    if "*" in candidates:
        return True
    target = _strip_weak(etag)
    return any(_strip_weak(c) == target for c in candidates)


def not_modified_since(if_modified_since: str, last_modified: Optional[datetime]) -> bool:
    if last_modified is None:
        return False
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError, IndexError):
        return False
    if since is None:
        return False
    # HTTP dates carry whole seconds only
    modified = _as_utc(last_modified).replace(microsecond=0)
    return modified <= _as_utc(since)


def is_not_modified(headers: Mapping[str, str], obj: StoredObject) -> bool:
    if_none_match = headers.get("if-none-match")
    if if_none_match and etag_matches(if_none_match, obj.etag):
        return True
    if_modified_since = headers.get("if-modified-since")
    return bool(if_modified_since) and not_modified_since(if_modified_since, obj.last_modified)


def response_content_type(path: str, obj: StoredObject) -> str:
    detected = content_type_for(path)
    if detected != DEFAULT_CONTENT_TYPE:
        return detected
    return obj.content_type or DEFAULT_CONTENT_TYPE


def resolve(method: str, host: str, path: str, headers: Mapping[str, str], store: ContentStore) -> Resolution:
    """
    Resolve one request against the content store. `headers` must be keyed
    lower-case (Starlette's Headers already are).
    """
    method = method.upper()
    if method not in ALLOWED_METHODS:
        resolution = _text(405, "Method Not Allowed")
        resolution.headers["Allow"] = ", ".join(ALLOWED_METHODS)
        return resolution

    try:
        namespace = namespace_from_host(host)
    except ResolutionError as e:
        return _text(e.status_code, e.message)
    if namespace is None:
        return _text(200, ROOT_DOMAIN_MESSAGE)

    file_path = INDEX_PATH if path in ("", "/") else path
    obj = store.get(namespace, file_path)
    if obj is None and not has_file_extension(file_path):
        file_path = INDEX_PATH
        obj = store.get(namespace, file_path)
    if obj is None:
        return _text(404, "Not Found")

    if is_not_modified(headers, obj):
        resolution = Resolution(304)
        if obj.etag:
            resolution.headers["ETag"] = obj.etag
        return resolution

    response_headers = {
        "Content-Type": response_content_type(file_path, obj),
        "Content-Disposition": "inline",
        "Cache-Control": f"public, max-age={settings.cache_max_age}",
        "Content-Length": str(obj.size),
    }
    if obj.etag:
        response_headers["ETag"] = obj.etag
    if obj.last_modified:
        response_headers["Last-Modified"] = format_datetime(_as_utc(obj.last_modified), usegmt=True)

    body = b"" if method == "HEAD" else obj.body
    return Resolution(200, body, response_headers)
