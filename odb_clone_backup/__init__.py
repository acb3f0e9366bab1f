"""Clone-based out-of-system backups for Epic ODB on Nutanix AHV."""

from .__version__ import __version__

__all__ = ["__version__"]
