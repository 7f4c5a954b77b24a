"""Extension -> Content-Type table shared by publishing and serving."""
import posixpath

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    "html": "text/html; charset=utf-8",
    "htm": "text/html; charset=utf-8",
    "css": "text/css; charset=utf-8",
    "js": "application/javascript; charset=utf-8",
    "mjs": "application/javascript; charset=utf-8",
    "json": "application/json; charset=utf-8",
    "map": "application/json; charset=utf-8",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "avif": "image/avif",
    "ico": "image/x-icon",
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
    "otf": "font/otf",
    "eot": "application/vnd.ms-fontobject",
    "pdf": "application/pdf",
    "xml": "application/xml",
    "txt": "text/plain; charset=utf-8",
    "webmanifest": "application/manifest+json",
    "wasm": "application/wasm",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mp3": "audio/mpeg",
}


def file_extension(path: str) -> str:
    """Lower-cased extension of the last path segment, '' when there is none."""
    name = posixpath.basename(path)
    dot = name.rfind(".")
    if dot <= 0 or dot == len(name) - 1:
        # No dot, a dotfile like ".env", or a trailing dot
        return ""
    return name[dot + 1:].lower()


def has_file_extension(path: str) -> bool:
    return file_extension(path) != ""


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(file_extension(path), DEFAULT_CONTENT_TYPE)
