"""Data models shared by planning, procedures and the API clients."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .clients import SdcClients

# Services that run as host level daemons on every server instead of as VMs.
AGENT_SERVICES = frozenset(
    {
        "agents_core",
        "amon-agent",
        "amon-relay",
        "cabase",
        "cainstsvc",
        "cmon-agent",
        "cn-agent",
        "config-agent",
        "firewaller",
        "hagfish-watcher",
        "net-agent",
        "smartlogin",
        "vm-agent",
    }
)

CN_AGENT = "cn-agent"


class TaskStatus(str, Enum):
    """Status values reported by the CNAPI task resource."""
    PENDING = "pending"
    COMPLETE = "complete"
    FAILURE = "failure"

    @classmethod
    def from_wire(cls, value: Any) -> Optional["TaskStatus"]:
        """Return the matching status, or None for a value we do not recognize."""
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class Image:
    """An IMGAPI image, the artifact installed by an update."""
    uuid: str
    name: str
    version: str


@dataclass(frozen=True)
class Instance:
    """One running deployment of a service on one server."""
    service: str
    server: str
    version: Optional[str] = None
    image: Optional[str] = None
    instance_id: Optional[str] = None
    hostname: Optional[str] = None


@dataclass(frozen=True)
class Change:
    """Planned update of one service to one image across a list of instances."""
    service: str
    image: Image
    insts: Tuple[Instance, ...] = ()

    @property
    def is_agent(self) -> bool:
        return self.service in AGENT_SERVICES


@dataclass(frozen=True)
class Plan:
    """Ordered list of changes to execute."""
    changes: Tuple[Change, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.changes)

    def __len__(self) -> int:
        return len(self.changes)


ProgressFunc = Callable[..., None]


@dataclass(frozen=True)
class ExecutionContext:
    """
    Per-run state handed to every procedure.

    ``progress`` takes a %-style format string and its arguments; it must be
    callable from worker threads.
    """
    log: logging.Logger
    progress: ProgressFunc
    clients: "SdcClients"
    wrk_dir: Path
    plan: Plan = field(default_factory=Plan)
