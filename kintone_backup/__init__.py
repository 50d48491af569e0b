"""
kintone_backup - Backup and restore for kintone apps.

Captures app records into versioned archives with a local metadata index,
and replays archived records back into the live service.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
