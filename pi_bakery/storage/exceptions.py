"""Custom exceptions for bakeform storage operations.

Exception Hierarchy:
    BakeryError (base)
        ├── ConfigurationError          (pi_bakery.config.settings)
        ├── ExportWriteError            (pi_bakery.services.exports)
        └── StorageError
            ├── MappingError
            ├── MountError
            │   ├── AlreadyMountedError
            │   └── UnmountError
            ├── BakeformNotFoundError
            ├── BakeformConflictError
            ├── InvalidBakeformNameError
            ├── CopyError
            ├── DeleteError
            └── UploadError

Usage:
    from pi_bakery.storage.exceptions import BakeformNotFoundError

    if name not in content:
        raise BakeformNotFoundError(name)
"""

from __future__ import annotations


class BakeryError(Exception):
    """Base exception for everything raised by pi-bakery."""


class StorageError(BakeryError):
    """Base exception for all bakeform storage operations."""


class MappingError(StorageError):
    """Partition mapping or unmapping of an image file failed."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Partition mapping failed for {image_path}: {reason}")


class MountError(StorageError):
    """Base exception for mount-related errors."""


class AlreadyMountedError(MountError):
    """Mount was requested for a bakeform that is already mounted."""

    def __init__(self, name: str, mounted_on: list[str]):
        self.name = name
        self.mounted_on = list(mounted_on)
        super().__init__(
            f"Bakeform {name} is already mounted on {', '.join(self.mounted_on)}"
        )


class UnmountError(MountError):
    """One or more mount points could not be unmounted."""

    def __init__(self, target: str, failures: list[str]):
        self.target = target
        self.failures = list(failures)
        super().__init__(f"Failed to unmount {target}: {'; '.join(self.failures)}")


class BakeformNotFoundError(StorageError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Bakeform not found: {name}")


class BakeformConflictError(StorageError):
    """An image with the requested name already exists."""

    def __init__(self, name: str, location: str):
        self.name = name
        self.location = location
        super().__init__(f"Bakeform {name} already exists at {location}")


class InvalidBakeformNameError(StorageError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid bakeform name: {name!r}")


class CopyError(StorageError):
    """Copying boot partition contents to the file backend failed."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to copy boot folder for {name}: {reason}")


class DeleteError(StorageError):
    """Removing an image file or its boot copy failed."""

    def __init__(self, name: str, failures: list[str]):
        self.name = name
        self.failures = list(failures)
        super().__init__(f"Failed to delete bakeform {name}: {'; '.join(self.failures)}")


class UploadError(StorageError):
    """Writing an uploaded image to the image folder failed."""

    def __init__(self, name: str, stage: str, reason: str):
        self.name = name
        self.stage = stage
        self.reason = reason
        super().__init__(f"Upload of {name} failed while {stage}: {reason}")
