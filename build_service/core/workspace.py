"""
Workspace Manager - one exclusively-owned temporary directory per build job.
"""
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from build_service.core.errors import InvalidRequestError

logger = logging.getLogger(__name__)

CLONE_DIR_NAME = "repo"


def is_safe_relative_path(path: str) -> bool:
    """Check if a path is safe (no traversal, not absolute)."""
    if not path:
        return False
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized):
        return False
    if ".." in normalized.split(os.sep):
        return False
    if normalized.startswith("/"):
        return False
    return True


@dataclass
class Workspace:
    """Temporary directory tree owned by one job."""
    job_id: str
    root: Path
    released: bool = field(default=False, repr=False)

    @property
    def clone_path(self) -> Path:
        return self.root / CLONE_DIR_NAME

    def package_path(self, relative: str) -> Path:
        """Resolve the package directory inside the clone. Nothing is created."""
        if not is_safe_relative_path(relative):
            raise InvalidRequestError("Invalid package_path parameter")
        return self.clone_path / os.path.normpath(relative)


class WorkspaceManager:
    """Creates and removes job workspaces."""

    def __init__(self, root: Optional[Path] = None, prefix: str = "build-"):
        self._root = Path(root) if root else None
        self._prefix = prefix

    @property
    def root(self) -> Path:
        return self._root or Path(tempfile.gettempdir())

    def acquire(self, job_id: str) -> Workspace:
        """Create a uniquely named workspace root for a job."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = tempfile.mkdtemp(prefix=f"{self._prefix}{job_id}-", dir=str(self.root))
        logger.info(f"workspace_created job_id={job_id}")
        return Workspace(job_id=job_id, root=Path(path))

    def release(self, workspace: Workspace) -> None:
        """Remove the workspace tree. Safe to call more than once."""
        if workspace.released:
            return
        workspace.released = True
        try:
            shutil.rmtree(workspace.root)
            logger.info(f"workspace_cleaned job_id={workspace.job_id}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"workspace_cleanup_failed job_id={workspace.job_id} error={e}")

    @contextmanager
    def workspace(self, job_id: str) -> Iterator[Workspace]:
        """Acquire a workspace that is released on every exit path."""
        ws = self.acquire(job_id)
        try:
            yield ws
        finally:
            self.release(ws)
