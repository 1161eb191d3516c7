"""Collaborator contracts and small value objects.

The file backend and the boot-client registry live outside the bakeform
core. They are described here as protocols so alternate backends, and fakes
in tests, can be substituted freely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Protocol, Sequence, runtime_checkable


# ==============================================================================
# File Backend
# ==============================================================================


@runtime_checkable
class FileBackend(Protocol):
    """Stores and serves per-bakeform copies of boot partitions."""

    @property
    def boot_root(self) -> Path:
        """Directory holding one boot copy per bakeform name."""
        ...

    def copy_boot_folder(self, source_dir: str | Path, name: str) -> Path:
        """Copy ``source_dir`` to ``<boot_root>/<name>`` and return the copy."""
        ...


# ==============================================================================
# Boot Clients
# ==============================================================================


@runtime_checkable
class BootClient(Protocol):
    root_location: str


@runtime_checkable
class BootClientRegistry(Protocol):
    """Source of the boot clients currently in the oven."""

    def list_oven(self) -> Sequence[BootClient]:
        ...


@dataclass(frozen=True)
class BootClientRecord:
    """A boot client identified only by its exported root."""

    root_location: str


@dataclass
class StaticBootClientRegistry:
    """Registry over a fixed list of records (CLI use and tests)."""

    records: list[BootClientRecord] = field(default_factory=list)

    @classmethod
    def from_root_locations(cls, roots: Iterable[str]) -> StaticBootClientRegistry:
        return cls(records=[BootClientRecord(root_location=root) for root in roots])

    def list_oven(self) -> list[BootClientRecord]:
        return list(self.records)
