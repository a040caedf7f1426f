"""NETFORGE deployment lock package.

Lease-based mutual exclusion for commands that mutate a deployment.
"""

from netforge.lock.holder import LockHolder
from netforge.lock.manager import LeaseStatus, LockHandle, LockManager, LockState


__all__ = [
    "LeaseStatus",
    "LockHandle",
    "LockHolder",
    "LockManager",
    "LockState",
]
