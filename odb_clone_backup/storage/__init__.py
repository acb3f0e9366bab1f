"""Storage side of the clone lifecycle.

Modules:
    - control_plane: acli client for Nutanix volume groups
    - mount: LVM discovery and mounting on the utility host
    - retention: keep-N selection of expired clones
    - command_runners: subprocess/ssh helpers
"""

from .control_plane import StorageControlClient
from .mount import MountHost
from .retention import RetentionPolicy, filter_environment, select_for_eviction

__all__ = [
    "MountHost",
    "RetentionPolicy",
    "StorageControlClient",
    "filter_environment",
    "select_for_eviction",
]
