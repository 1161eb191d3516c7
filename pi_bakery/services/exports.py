"""NFS export file regeneration.

The export file is rebuilt wholesale from the boot clients currently in the
oven, one line per client::

    /srv/pi1 *(rw,sync,no_subtree_check,no_root_squash)

Regeneration does not reload the NFS server. Call ``reload_exports`` once
the new file is in place.
"""

from __future__ import annotations

import threading
from pathlib import Path

from pi_bakery.config.settings import DEFAULT_EXPORTS_PATH
from pi_bakery.domain import BootClientRegistry
from pi_bakery.logging import LoggerFactory
from pi_bakery.storage.command_runners import run_checked_command
from pi_bakery.storage.exceptions import BakeryError


log = LoggerFactory.for_exports()

EXPORT_OPTIONS = "*(rw,sync,no_subtree_check,no_root_squash)"


class ExportWriteError(BakeryError):
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to write exports file {path}: {reason}")


def format_exports(root_locations: list[str]) -> str:
    return "".join(f"{root} {EXPORT_OPTIONS}\n" for root in root_locations)


class ExportRegenerator:
    """Single-writer owner of the export file."""

    def __init__(self, exports_path: str | Path = DEFAULT_EXPORTS_PATH):
        self.exports_path = Path(exports_path)
        self._lock = threading.Lock()

    def regenerate(self, registry: BootClientRegistry) -> str:
        """Rewrite the export file from ``registry``.

        Concurrent callers queue on the regenerator's lock.

        Returns:
            The content written

        Raises:
            ExportWriteError: If the file cannot be written
        """
        with self._lock:
            clients = registry.list_oven()
            content = format_exports([client.root_location for client in clients])
            log.info(f"Generated new exports file:\n{content}")
            try:
                self.exports_path.write_text(content, encoding="utf-8")
            except OSError as exc:
                raise ExportWriteError(str(self.exports_path), str(exc)) from exc
            return content


def reload_exports(exportfs_path: str = "exportfs") -> None:
    """Ask the NFS server to re-read the export file."""
    run_checked_command([exportfs_path, "-ra"])
    log.info("NFS exports reloaded")
