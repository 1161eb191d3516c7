"""A bakeform: one raw disk image plus its transient mount state.

State machine::

    Unmounted --mount()--> Mounted --unmount()--> Unmounted
    Mounted   --mount()--> AlreadyMountedError
    any       --delete()-> Removed

Partition ``i`` of bakeform ``name`` is mounted on ``<mount_root>/<name>/<i>``.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Protocol

from pi_bakery.domain import FileBackend
from pi_bakery.logging import LoggerFactory
from pi_bakery.storage.bakeform_lock import bakeform_operation, is_operation_active
from pi_bakery.storage.exceptions import (
    AlreadyMountedError,
    DeleteError,
    MappingError,
    MountError,
    UnmountError,
)


IMAGE_SUFFIX = ".img"


class Mapper(Protocol):
    def map_partitions(self, image_path: str | Path) -> list[str]: ...

    def unmap_partitions(self, image_path: str | Path) -> None: ...


class Mounter(Protocol):
    def mount(self, device_path: str, target_dir: str | Path) -> None: ...

    def unmount(self, target_dir: str | Path) -> None: ...


class Bakeform:
    def __init__(
        self,
        name: str,
        location: str | Path,
        mount_root: str | Path,
        file_backend: FileBackend,
        mapper: Mapper,
        mounts: Mounter,
    ):
        self.name = name
        self.location = Path(location)
        self.mount_root = Path(mount_root)
        self.boot_location = Path(file_backend.boot_root) / name
        self.mounted_on: list[str] = []
        self._file_backend = file_backend
        self._mapper = mapper
        self._mounts = mounts
        self._mapped = False
        self._log = LoggerFactory.for_mount(name)

    def __repr__(self) -> str:
        return f"Bakeform(name={self.name!r}, location={str(self.location)!r})"

    @property
    def is_mounted(self) -> bool:
        return bool(self.mounted_on)

    def has_boot_copy(self) -> bool:
        return self.boot_location.exists()

    def mount_point(self, index: int) -> Path:
        return self.mount_root / self.name / str(index)

    def mount(self) -> None:
        """Map the image's partitions and mount each one.

        If any partition fails to mount, everything established so far is
        unmounted and unmapped before the error is re-raised.

        Raises:
            AlreadyMountedError: If the bakeform is already mounted
            MappingError: If the partitions could not be mapped
            MountError: If a partition could not be mounted
        """
        with bakeform_operation(self.name):
            if self.mounted_on:
                raise AlreadyMountedError(self.name, self.mounted_on)

            devices = self._mapper.map_partitions(self.location)
            self._mapped = True
            try:
                for index, device in enumerate(devices):
                    target = str(self.mount_point(index))
                    self._mounts.mount(device, target)
                    self.mounted_on.append(target)
            except Exception as exc:
                self._log.error(
                    f"Mount of {self.name} failed after "
                    f"{len(self.mounted_on)}/{len(devices)} partitions: {exc}"
                )
                failures = self._release()
                if failures:
                    self._log.error(
                        f"Cleanup after failed mount of {self.name} incomplete: "
                        f"{'; '.join(failures)}"
                    )
                raise

            self._log.info(f"Mounted {self.name} on {', '.join(self.mounted_on)}")

    def unmount(self) -> None:
        """Unmount every partition, then remove the partition mappings.

        No-op when nothing is mounted or mapped. Paths that fail to unmount
        stay in ``mounted_on`` and the mapping is kept, so a later call can
        finish the cleanup.

        Raises:
            UnmountError: Listing every unmount or unmap failure
        """
        with bakeform_operation(self.name):
            if not self.mounted_on and not self._mapped:
                return
            failures = self._release()
            if failures:
                raise UnmountError(self.name, failures)
            self._log.info(f"Unmounted {self.name}")

    def delete(self) -> None:
        """Remove the image file and its boot copy, unmounting first if needed.

        Raises:
            DeleteError: If unmounting or either removal fails
        """
        with bakeform_operation(self.name):
            if self.mounted_on or self._mapped:
                try:
                    self.unmount()
                except UnmountError as exc:
                    raise DeleteError(self.name, [str(exc)]) from exc

            failures = []
            try:
                self.location.unlink()
            except FileNotFoundError:
                self._log.warning(f"Image file {self.location} already removed")
            except OSError as exc:
                failures.append(f"removing {self.location}: {exc}")

            if self.boot_location.exists():
                try:
                    shutil.rmtree(self.boot_location)
                except OSError as exc:
                    failures.append(f"removing {self.boot_location}: {exc}")

            if failures:
                raise DeleteError(self.name, failures)
            self._log.info(f"Deleted bakeform {self.name}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "location": str(self.location),
            "boot_location": str(self.boot_location),
            "mounted_on": list(self.mounted_on),
            "mounted": self.is_mounted,
            "busy": is_operation_active(self.name),
        }

    def _release(self) -> list[str]:
        """Unmount in reverse order, then unmap. Returns failure messages."""
        failures: list[str] = []
        remaining: list[str] = []
        for target in reversed(self.mounted_on):
            try:
                self._mounts.unmount(target)
            except MountError as exc:
                self._log.error(f"Failed to unmount {target}: {exc}")
                failures.append(str(exc))
                remaining.insert(0, target)
        self.mounted_on = remaining

        if remaining:
            # The mapping stays while any partition is still mounted
            return failures

        try:
            self._mapper.unmap_partitions(self.location)
            self._mapped = False
        except MappingError as exc:
            self._log.error(f"Failed to unmap {self.location}: {exc}")
            failures.append(str(exc))
        return failures
