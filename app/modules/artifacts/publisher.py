import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from app.config import settings
from app.core.content_types import content_type_for
from app.core.exceptions import PublicationError
from app.modules.storage.base import ContentStore

logger = logging.getLogger(__name__)


@dataclass
class UploadReport:
    namespace: str
    files: List[str] = field(default_factory=list)
    total_bytes: int = 0

    @property
    def file_count(self) -> int:
        return len(self.files)


def public_url_for(namespace: str, serving_domain: Optional[str] = None, scheme: Optional[str] = None) -> str:
    return f"{scheme or settings.public_url_scheme}://{namespace}.{serving_domain or settings.serving_domain}"


class ArtifactPublisher:
    """Uploads a build's output tree into the content store under `{namespace}/`."""

    def __init__(self, store: ContentStore):
        self.store = store

    def collect_files(self, output_root: Path) -> List[Path]:
        """Regular files under output_root, sorted; symlinks are skipped and never followed."""
        files = []
        for root, dirs, names in os.walk(output_root):
            dirs.sort()
            for name in sorted(names):
                path = Path(root) / name
                if path.is_symlink():
                    logger.warning(f"Skipping symlink in build output: {path.relative_to(output_root)}")
                    continue
                if path.is_file():
                    files.append(path)
        return files

    def check_output_root(self, output_root: Path, within: Optional[Path] = None) -> None:
        if output_root.is_symlink():
            raise PublicationError(
                f"Build output directory {output_root.name} must not be a symlink",
                {"output_root": str(output_root)},
            )
        if within is None:
            return
        try:
            output_root.resolve().relative_to(Path(within).resolve())
        except ValueError:
            raise PublicationError(
                f"Build output directory {output_root.name} is outside the build work directory",
                {"output_root": str(output_root)},
            )

    def publish(
        self, output_root: Union[str, Path], namespace: str, within: Optional[Union[str, Path]] = None
    ) -> UploadReport:
        """Upload every file; any failure aborts and removes what was already uploaded.

        `within` is the build work directory; an output root that resolves
        outside it is rejected. Blocking; the deployment worker runs it in a
        thread pool.
        """
        output_root = Path(output_root)
        self.check_output_root(output_root, Path(within) if within is not None else None)
        if not output_root.is_dir():
            raise PublicationError(
                f"Build output directory not found: {output_root.name}",
                {"output_root": str(output_root)},
            )
        files = self.collect_files(output_root)
        if not files:
            raise PublicationError(
                f"Build output directory {output_root.name} is empty",
                {"output_root": str(output_root)},
            )

        report = UploadReport(namespace=namespace)
        uploaded: List[str] = []
        logger.info(f"Publishing {len(files)} file(s) to namespace {namespace}")
        for path in files:
            relative = path.relative_to(output_root).as_posix()
            try:
                body = path.read_bytes()
                report.files.append(self.store.put(namespace, relative, body, content_type_for(relative)))
                uploaded.append(relative)
                report.total_bytes += len(body)
            except Exception as e:
                logger.error(f"Upload of {relative} to {namespace} failed: {e}")
                self._discard(namespace, uploaded)
                raise PublicationError(
                    f"Failed to upload {relative}: {e}",
                    {"path": relative, "uploaded": len(uploaded)},
                ) from e
        logger.info(f"Published {report.file_count} file(s), {report.total_bytes} bytes, to {namespace}")
        return report

    def _discard(self, namespace: str, paths: List[str]) -> None:
        for relative in paths:
            try:
                self.store.delete(namespace, relative)
            except Exception as e:
                logger.warning(f"Could not remove partially published {namespace}/{relative}: {e}")
