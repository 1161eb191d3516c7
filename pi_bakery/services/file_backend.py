"""Local directory file backend for boot partition copies."""

from __future__ import annotations

import shutil
from pathlib import Path

from pi_bakery.logging import LoggerFactory
from pi_bakery.storage.exceptions import CopyError


log = LoggerFactory.for_inventory()


class LocalFileBackend:
    """Keeps boot copies in ``<boot_root>/<name>`` on a local (NFS-exported) disk."""

    def __init__(self, boot_root: str | Path):
        self._boot_root = Path(boot_root)

    @property
    def boot_root(self) -> Path:
        return self._boot_root

    def copy_boot_folder(self, source_dir: str | Path, name: str) -> Path:
        """Copy the contents of ``source_dir`` into ``<boot_root>/<name>``.

        Raises:
            CopyError: If the source is missing or the copy fails
        """
        source = Path(source_dir)
        destination = self._boot_root / name
        if not source.is_dir():
            raise CopyError(name, f"source {source} is not a directory")
        try:
            self._boot_root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, destination, symlinks=True)
        except OSError as exc:
            raise CopyError(name, str(exc)) from exc
        log.debug(f"Copied {source} to {destination}")
        return destination
