"""Mounting of mapped image partitions.

Mount targets live under the configured mount root. Device paths are
validated before they are handed to ``mount`` so that nothing outside
``/dev/`` and nothing carrying shell metacharacters reaches the command line.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path

from pi_bakery.logging import LoggerFactory
from pi_bakery.storage.command_runners import CommandError, run_checked_command
from pi_bakery.storage.exceptions import MountError, UnmountError


log = LoggerFactory.for_mount()

_INVALID_PATH_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")


def validate_device_path(device: str) -> None:
    """Reject anything that is not a plain /dev/ node path.

    Raises:
        ValueError: If the path is outside /dev/ or contains invalid characters
    """
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in _INVALID_PATH_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device}")


class MountController:
    """Mount and unmount block devices, remembering what it mounted."""

    def __init__(self, mount_path: str = "mount", umount_path: str = "umount"):
        self.mount_path = mount_path
        self.umount_path = umount_path
        self._mounted: set[str] = set()
        self._lock = threading.Lock()

    @property
    def mounted_paths(self) -> set[str]:
        with self._lock:
            return set(self._mounted)

    def is_mounted(self, target_dir: str | Path) -> bool:
        with self._lock:
            return str(target_dir) in self._mounted

    def mount(self, device_path: str, target_dir: str | Path) -> None:
        """Mount ``device_path`` on ``target_dir``, creating the directory.

        Raises:
            MountError: If the device path is invalid or the target is already
                mounted here. Also raised when mount fails, in which case the
                target is not tracked and a directory created here is removed.
        """
        target = Path(target_dir)
        try:
            validate_device_path(device_path)
        except ValueError as exc:
            raise MountError(str(exc)) from exc
        if self.is_mounted(target):
            raise MountError(f"{target} already has a device mounted by this controller")

        created = not target.exists()
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MountError(f"Failed to create mount point {target}: {exc}") from exc

        try:
            run_checked_command([self.mount_path, device_path, str(target)])
        except CommandError as exc:
            if created:
                _remove_empty_dir(target)
            raise MountError(f"Failed to mount {device_path} to {target}: {exc}") from exc

        with self._lock:
            self._mounted.add(str(target))
        log.debug(f"Mounted {device_path} on {target}")

    def unmount(self, target_dir: str | Path) -> None:
        """Unmount ``target_dir``.

        A target that is not mounted is logged as a warning and skipped.

        Raises:
            UnmountError: If umount fails
        """
        target = str(target_dir)
        if not os.path.ismount(target):
            log.warning(f"{target} is not mounted, skipping unmount")
            with self._lock:
                self._mounted.discard(target)
            return

        try:
            run_checked_command([self.umount_path, target])
        except CommandError as exc:
            raise UnmountError(target, [str(exc)]) from exc

        with self._lock:
            self._mounted.discard(target)
        _remove_empty_dir(Path(target))
        log.debug(f"Unmounted {target}")


def _remove_empty_dir(path: Path) -> None:
    try:
        path.rmdir()
    except OSError as exc:
        log.debug(f"Leaving mount point directory {path} in place: {exc}")
