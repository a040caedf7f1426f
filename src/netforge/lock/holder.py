"""Lock holder identity."""

from __future__ import annotations

import getpass
import json
import os
import socket
from dataclasses import dataclass


@dataclass(frozen=True)
class LockHolder:
    """A lock holder, identified by user, machine, and process.

    Serialized as JSON into the lease's ``holderIdentity`` field. Two holders
    are equal only when all three parts match, i.e. the same process.
    """

    username: str
    hostname: str
    pid: int

    @classmethod
    def current(cls, username: str | None = None) -> LockHolder:
        """The holder identity of this process."""
        return cls(
            username=username or getpass.getuser(),
            hostname=socket.gethostname(),
            pid=os.getpid(),
        )

    @classmethod
    def from_json(cls, payload: str | None) -> LockHolder | None:
        """Parse a ``holderIdentity``; returns None for foreign formats."""
        if not payload:
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None

        username = data.get("username")
        hostname = data.get("hostname")
        pid = data.get("pid")
        if not isinstance(username, str) or not isinstance(hostname, str):
            return None
        if not isinstance(pid, int) or isinstance(pid, bool):
            return None
        return cls(username=username, hostname=hostname, pid=pid)

    def to_json(self) -> str:
        return json.dumps(
            {"username": self.username, "hostname": self.hostname, "pid": self.pid},
            sort_keys=True,
        )

    def is_same_machine(self, other: LockHolder) -> bool:
        """Same user on the same host, possibly a different process."""
        return self.username == other.username and self.hostname == other.hostname

    def is_process_alive(self) -> bool:
        """Whether this holder's PID is alive on the local machine."""
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists, owned by someone else
            return True
        except OSError:
            return False
        return True

    def __str__(self) -> str:
        return f"'{self.username}' on '{self.hostname}' (PID {self.pid})"


__all__ = ["LockHolder"]
