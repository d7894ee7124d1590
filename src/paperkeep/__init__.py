"""
Paperkeep - local-first receipt backup and restore

Bundles every locally stored receipt and its photo into one portable,
password-protected archive, and rebuilds local state from such an archive on
the same or another device.

Design Principles:
    - Local-first: no server, no account, no network
    - Portability: a backup is a single self-describing zip file
    - Security: archives are encrypted with a key derived from the user's
      password; device keys never leave the device
    - Resilience: one bad record never aborts a restore
"""

__version__ = "0.1.0"

from paperkeep.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
