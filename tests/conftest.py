"""
Pytest configuration and shared fixtures for pi-bakery tests.

The fakes here stand in for kpartx, mount and the NFS file backend so the
bakeform state machine can be exercised without root privileges.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from pi_bakery.storage.exceptions import CopyError, MappingError, MountError, UnmountError
from pi_bakery.storage.inventory import BakeformInventory


# ==============================================================================
# Fakes
# ==============================================================================


class FakeMapper:
    """Maps every image to ``partitions`` fake /dev/mapper devices."""

    def __init__(self, partitions: int = 2) -> None:
        self.partitions = partitions
        self.active: dict[str, list[str]] = {}
        self.map_calls: list[str] = []
        self.unmap_calls: list[str] = []
        self.fail_map = False
        self.fail_unmap = False
        self.map_delay: threading.Event | None = None
        self._counter = 0
        self._lock = threading.Lock()

    def map_partitions(self, image_path) -> list[str]:
        image = str(image_path)
        self.map_calls.append(image)
        if self.map_delay is not None:
            self.map_delay.wait(timeout=1)
        if self.fail_map:
            raise MappingError(image, "kpartx exploded")
        with self._lock:
            loop = f"loop{self._counter}"
            self._counter += 1
        devices = [f"/dev/mapper/{loop}p{index + 1}" for index in range(self.partitions)]
        self.active[image] = devices
        return devices

    def unmap_partitions(self, image_path) -> None:
        image = str(image_path)
        self.unmap_calls.append(image)
        if self.fail_unmap:
            raise MappingError(image, "device busy")
        self.active.pop(image, None)


class FakeMounts:
    """Records mounts and creates the target directories like mount(8) would."""

    def __init__(self) -> None:
        self.mounted: dict[str, str] = {}
        self.fail_devices: set[str] = set()
        self.fail_unmount: set[str] = set()

    def mount(self, device_path: str, target_dir) -> None:
        target = str(target_dir)
        if any(device_path.endswith(suffix) for suffix in self.fail_devices):
            raise MountError(f"Failed to mount {device_path} to {target}")
        Path(target).mkdir(parents=True, exist_ok=True)
        (Path(target) / "cmdline.txt").write_text(f"root={device_path}\n")
        self.mounted[target] = device_path

    def unmount(self, target_dir) -> None:
        target = str(target_dir)
        if target in self.fail_unmount:
            raise UnmountError(target, ["target is busy"])
        self.mounted.pop(target, None)


class FakeFileBackend:
    def __init__(self, boot_root: Path) -> None:
        self._boot_root = boot_root
        self.copies: list[tuple[str, str]] = []
        self.fail = False
        self.write_partial_on_fail = False
        self.block: threading.Event | None = None
        self.copy_started = threading.Event()

    @property
    def boot_root(self) -> Path:
        return self._boot_root

    def copy_boot_folder(self, source_dir, name: str) -> Path:
        self.copy_started.set()
        if self.block is not None:
            self.block.wait(timeout=5)
        destination = self._boot_root / name
        if self.fail:
            if self.write_partial_on_fail:
                destination.mkdir(parents=True)
                (destination / "half-written").write_text("x")
            raise CopyError(name, "disk full")
        destination.mkdir(parents=True)
        self.copies.append((str(source_dir), name))
        return destination


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def image_folder(tmp_path) -> Path:
    folder = tmp_path / "images"
    folder.mkdir()
    return folder


@pytest.fixture
def mount_root(tmp_path) -> Path:
    root = tmp_path / "mnt"
    root.mkdir()
    return root


@pytest.fixture
def boot_root(tmp_path) -> Path:
    root = tmp_path / "boot"
    root.mkdir()
    return root


@pytest.fixture
def mapper() -> FakeMapper:
    return FakeMapper()


@pytest.fixture
def mounts() -> FakeMounts:
    return FakeMounts()


@pytest.fixture
def file_backend(boot_root) -> FakeFileBackend:
    return FakeFileBackend(boot_root)


@pytest.fixture
def make_image(image_folder):
    """Create ``<image_folder>/<name>.img`` with some content."""

    def _make(name: str, content: bytes = b"\x00" * 512) -> Path:
        path = image_folder / f"{name}.img"
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def inventory(image_folder, mount_root, file_backend, mapper, mounts) -> BakeformInventory:
    return BakeformInventory(
        image_folder, mount_root, file_backend, mapper=mapper, mounts=mounts
    )
