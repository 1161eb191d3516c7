"""The bakeform inventory: every ``*.img`` in the image folder, keyed by name.

Every load builds a fresh mapping and swaps it in with a single assignment
under the inventory lock. Readers therefore see either the previous mapping
or the new one in full.

On load, each image whose boot copy is missing goes through a one-time
mount, copy, unmount sequence. The presence of ``<boot_root>/<name>`` marks
the copy as done.
"""

from __future__ import annotations

import re
import shutil
import threading
from pathlib import Path
from typing import BinaryIO

from pi_bakery.config.settings import ConfigurationError
from pi_bakery.domain import FileBackend
from pi_bakery.logging import LoggerFactory, operation_context
from pi_bakery.storage.bakeform import IMAGE_SUFFIX, Bakeform, Mapper, Mounter
from pi_bakery.storage.exceptions import (
    BakeformConflictError,
    BakeformNotFoundError,
    CopyError,
    InvalidBakeformNameError,
    StorageError,
    UploadError,
)
from pi_bakery.storage.mount import MountController
from pi_bakery.storage.partitions import PartitionMapper


log = LoggerFactory.for_inventory()

# Names appear in HTTP resource paths
BAKEFORM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

UPLOAD_CHUNK_SIZE = 1024 * 1024


def validate_bakeform_name(name: str) -> None:
    if not isinstance(name, str) or not BAKEFORM_NAME_RE.match(name):
        raise InvalidBakeformNameError(name)


class BakeformInventory:
    def __init__(
        self,
        folder: str | Path,
        mount_root: str | Path,
        file_backend: FileBackend,
        mapper: Mapper | None = None,
        mounts: Mounter | None = None,
    ):
        if not folder or not mount_root:
            raise ConfigurationError(
                "Please set IMAGE_FOLDER and IMAGE_MOUNT_ROOT env vars."
            )
        self.folder = Path(folder)
        self.mount_root = Path(mount_root)
        self.file_backend = file_backend
        self.mapper = mapper or PartitionMapper()
        self.mounts = mounts or MountController()
        self._content: dict[str, Bakeform] = {}
        # Names whose image file is still being written
        self._uploading: set[str] = set()
        self._lock = threading.RLock()

    @classmethod
    def create(cls, *args, **kwargs) -> BakeformInventory:
        """Build an inventory and load it once."""
        inventory = cls(*args, **kwargs)
        inventory.load()
        return inventory

    def image_path(self, name: str) -> Path:
        return self.folder / f"{name}{IMAGE_SUFFIX}"

    def load(self) -> None:
        """Rescan the image folder and replace the inventory content.

        Raises:
            OSError: If the image folder cannot be enumerated
            MappingError, MountError: If an image needing a boot copy cannot
                be mounted (nothing is left mounted)
            CopyError: If the boot copy fails (after the image is unmounted)
        """
        with self._lock:
            with operation_context("load", folder=str(self.folder)) as op_log:
                if not self.folder.is_dir():
                    raise FileNotFoundError(f"Image folder not found: {self.folder}")
                images = sorted(self.folder.glob(f"*{IMAGE_SUFFIX}"))

                content: dict[str, Bakeform] = {}
                for image in images:
                    if not image.is_file():
                        continue
                    name = image.stem
                    if name in self._uploading:
                        op_log.debug(f"Skipping {name}, upload in progress")
                        continue
                    op_log.info(f"Loading image {name}")
                    bakeform = self._content.get(name)
                    if bakeform is None or bakeform.location != image:
                        bakeform = self._build(name, image)
                    if not bakeform.has_boot_copy():
                        self._copy_boot(bakeform)
                    content[name] = bakeform

                self._content = content
                op_log.info(f"Inventory holds {len(content)} bakeform(s)")

    def list(self) -> dict[str, Bakeform]:
        """Snapshot of the current inventory."""
        with self._lock:
            return dict(self._content)

    def get(self, name: str) -> Bakeform:
        with self._lock:
            try:
                return self._content[name]
            except KeyError:
                raise BakeformNotFoundError(name) from None

    def upload(self, name: str, stream: BinaryIO) -> Bakeform:
        """Write ``stream`` to ``<folder>/<name>.img`` and reload.

        The inventory lock is only held to create the file and to load the
        result. While the body is being written the name is hidden from
        ``load()``.

        Raises:
            InvalidBakeformNameError: If the name is not URL-path safe
            BakeformConflictError: If an image with that name exists
            UploadError: If creating or writing the file fails
            MappingError, MountError, CopyError: If the new image cannot be
                mounted or its boot folder copied (the image is removed)
        """
        validate_bakeform_name(name)
        target = self.image_path(name)
        with self._lock:
            log.info(f"Receiving upload: {target}")
            try:
                handle = open(target, "xb")
            except FileExistsError:
                raise BakeformConflictError(name, str(target)) from None
            except OSError as exc:
                raise UploadError(name, "creating image file", str(exc)) from exc
            self._uploading.add(name)

        # The body arrives at the client's pace, so it is read unlocked
        try:
            with handle:
                shutil.copyfileobj(stream, handle, UPLOAD_CHUNK_SIZE)
        except Exception as exc:
            with self._lock:
                target.unlink(missing_ok=True)
                self._uploading.discard(name)
            raise UploadError(name, "saving image", str(exc)) from exc

        with self._lock:
            self._uploading.discard(name)
            self._prepare_upload(name, target)
            self.load()
            return self.get(name)

    def delete(self, name: str) -> None:
        """Delete a bakeform and resynchronize.

        The reload runs even when the delete fails, so a half-deleted
        bakeform is reflected in the inventory. The delete error wins.

        Raises:
            BakeformNotFoundError: If the name is unknown
            DeleteError: If removal fails
        """
        with self._lock:
            bakeform = self.get(name)
            try:
                bakeform.delete()
            except StorageError:
                try:
                    self.load()
                except Exception as reload_exc:
                    log.error(f"Error reloading bakeforms: {reload_exc}")
                raise
            self.load()

    def unmount_all(self) -> list[str]:
        """Unmount every tracked bakeform, best effort.

        Returns:
            Names of bakeforms that failed to unmount
        """
        failed: list[str] = []
        for name, bakeform in self.list().items():
            try:
                bakeform.unmount()
            except StorageError as exc:
                log.error(f"Failed to unmount {name}: {exc}")
                failed.append(name)
        return failed

    def _build(self, name: str, image: Path) -> Bakeform:
        return Bakeform(
            name=name,
            location=image,
            mount_root=self.mount_root,
            file_backend=self.file_backend,
            mapper=self.mapper,
            mounts=self.mounts,
        )

    def _prepare_upload(self, name: str, target: Path) -> None:
        """Copy the boot folder of a fresh upload, removing the image on failure.

        An image that cannot be mounted or copied would otherwise fail every
        later load while never becoming deletable through the inventory.
        """
        bakeform = self._build(name, target)
        if bakeform.has_boot_copy():
            return
        try:
            self._copy_boot(bakeform)
        except StorageError:
            log.error(f"Removing uploaded image {target} that failed to load")
            target.unlink(missing_ok=True)
            raise

    def _copy_boot(self, bakeform: Bakeform) -> None:
        """Mount, copy the first partition to the file backend, unmount."""
        bakeform.mount()
        try:
            self.file_backend.copy_boot_folder(bakeform.mounted_on[0], bakeform.name)
        except Exception as exc:
            self._unmount_after_copy(bakeform)
            self._discard_partial_copy(bakeform)
            if isinstance(exc, CopyError):
                raise
            raise CopyError(bakeform.name, str(exc)) from exc
        self._unmount_after_copy(bakeform)
        log.info(f"Copied boot folder of {bakeform.name} to {bakeform.boot_location}")

    def _unmount_after_copy(self, bakeform: Bakeform) -> None:
        try:
            bakeform.unmount()
        except StorageError as exc:
            log.error(f"Unmount after boot copy of {bakeform.name} failed: {exc}")

    def _discard_partial_copy(self, bakeform: Bakeform) -> None:
        # A leftover directory would mark the copy as done on the next load
        if not bakeform.boot_location.exists():
            return
        try:
            shutil.rmtree(bakeform.boot_location)
        except OSError as exc:
            log.error(
                f"Failed to remove partial boot copy {bakeform.boot_location}: {exc}"
            )
