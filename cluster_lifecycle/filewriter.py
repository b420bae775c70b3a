"""Writing workflow artifacts (kubeconfigs, manifests, logs) to disk."""

import os
from pathlib import Path

from cluster_lifecycle.exceptions import ClusterLifecycleError
from cluster_lifecycle.logging_config import get_logger

logger = get_logger(__name__)

PERMISSION_0600 = 0o600
DEFAULT_PERMISSION = 0o644
TEMP_DIR_NAME = "generated"


class FileWriterError(ClusterLifecycleError):
    """Exception raised when an artifact can't be written."""

    pass


class FileWriter:
    """Writes files under a base directory.

    Non-persistent files go to a ``generated`` subdirectory so that
    ``clean_up_temp`` can remove them once a workflow succeeds.
    """

    def __init__(self, base_dir: str | Path):
        self.dir = Path(base_dir)
        self.temp_dir = self.dir / TEMP_DIR_NAME

    def write(
        self,
        file_name: str,
        content: bytes | str,
        persistent: bool = False,
        permission: int = DEFAULT_PERMISSION,
    ) -> str:
        """Write ``content`` and return the path written.

        Raises:
            FileWriterError: If the directory or file can't be created
        """
        target_dir = self.dir if persistent else self.temp_dir
        path = target_dir / file_name
        if isinstance(content, str):
            content = content.encode()

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            # Created with the final mode; existing files are narrowed before writing
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, permission)
            with os.fdopen(fd, "wb") as f:
                os.fchmod(f.fileno(), permission)
                f.write(content)
        except OSError as e:
            raise FileWriterError(f"Failed to write {path}", str(e))

        logger.debug(f"Wrote {len(content)} bytes to {path}")
        return str(path)

    def with_dir(self, name: str) -> "FileWriter":
        """Return a writer rooted at a subdirectory, creating it."""
        sub_dir = self.dir / name
        try:
            sub_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileWriterError(f"Failed to create directory {sub_dir}", str(e))
        return FileWriter(sub_dir)

    def clean_up_temp(self) -> None:
        import shutil

        shutil.rmtree(self.temp_dir, ignore_errors=True)
