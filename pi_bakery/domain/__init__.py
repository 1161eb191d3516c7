"""Domain contracts for bakeform management."""

from __future__ import annotations

from .models import (
    BootClient,
    BootClientRecord,
    BootClientRegistry,
    FileBackend,
    StaticBootClientRegistry,
)


__all__ = [
    "BootClient",
    "BootClientRecord",
    "BootClientRegistry",
    "FileBackend",
    "StaticBootClientRegistry",
]
