"""Partition mapping for raw disk images via kpartx.

``kpartx -avs`` attaches the image to a loop device and prints one line per
partition it mapped::

    add map loop0p1 (253:0): 0 524288 linear 7:0 8192
    add map loop0p2 (253:1): 0 3571712 linear 7:0 532480

The mapped partitions then appear under ``/dev/mapper``.
"""

from __future__ import annotations

import re
from pathlib import Path

from pi_bakery.logging import LoggerFactory
from pi_bakery.storage.command_runners import CommandError, run_checked_command
from pi_bakery.storage.exceptions import MappingError


log = LoggerFactory.for_mount()

DEVICE_MAPPER_DIR = "/dev/mapper"

_ADD_MAP_RE = re.compile(r"^add map (\S+)")


def parse_kpartx_output(output: str) -> list[str]:
    """Extract /dev/mapper device paths from ``kpartx -av`` output."""
    devices = []
    for line in output.splitlines():
        match = _ADD_MAP_RE.match(line.strip())
        if match:
            devices.append(f"{DEVICE_MAPPER_DIR}/{match.group(1)}")
    return devices


class PartitionMapper:
    """Expose the partitions of an image file as block devices."""

    def __init__(self, kpartx_path: str = "kpartx", losetup_path: str = "losetup"):
        self.kpartx_path = kpartx_path
        self.losetup_path = losetup_path

    def map_partitions(self, image_path: str | Path) -> list[str]:
        """Map every partition of ``image_path``.

        Returns:
            Device paths in partition order (e.g. ``/dev/mapper/loop0p1``).

        A failed or empty mapping is torn down again before raising, since
        kpartx may have attached a loop device before it failed or timed out.

        Raises:
            MappingError: If kpartx fails or reports no mappings.
        """
        image = str(image_path)
        try:
            output = run_checked_command([self.kpartx_path, "-avs", image])
        except CommandError as exc:
            self._discard_failed_mapping(image)
            raise MappingError(image, str(exc)) from exc

        devices = parse_kpartx_output(output)
        if not devices:
            self._discard_failed_mapping(image)
            raise MappingError(image, "kpartx reported no partitions")
        log.debug(f"Mapped {image}: {', '.join(devices)}")
        return devices

    def _discard_failed_mapping(self, image: str) -> None:
        try:
            self.unmap_partitions(image)
        except MappingError as exc:
            log.error(f"Cleanup after failed mapping of {image} failed: {exc}")

    def has_mappings(self, image_path: str | Path) -> bool:
        """Return True if a loop device is attached to ``image_path``."""
        image = str(image_path)
        try:
            output = run_checked_command([self.losetup_path, "-j", image])
        except CommandError as exc:
            raise MappingError(image, str(exc)) from exc
        return bool(output.strip())

    def unmap_partitions(self, image_path: str | Path) -> None:
        """Remove the partition mappings and loop device of ``image_path``.

        An image with no active mappings is logged and left alone.

        Raises:
            MappingError: If kpartx fails to remove existing mappings.
        """
        image = str(image_path)
        if not self.has_mappings(image):
            log.info(f"No active partition mappings for {image}, nothing to unmap")
            return
        try:
            run_checked_command([self.kpartx_path, "-ds", image])
        except CommandError as exc:
            raise MappingError(image, str(exc)) from exc
        log.debug(f"Unmapped {image}")
