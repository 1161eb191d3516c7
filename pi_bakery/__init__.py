"""Network-boot disk image manager."""

from pi_bakery.__version__ import __version__


__all__ = ["__version__"]
