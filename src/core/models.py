#!/usr/bin/env -S python3 -B -u
"""
Data Models for the Site Simulator

This module provides the enums and small dataclasses shared by the process,
site and topology layers.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional
from enum import Enum


class RoleKind(str, Enum):
    """Kinds of externally launched service processes."""
    CACHE = "cache"
    COORDINATOR = "coordinator"
    TIMER = "timer"
    DNS = "dns"


class ProcessState(str, Enum):
    """Lifecycle state of a managed process."""
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class SiteState(str, Enum):
    """Aggregate state of a site."""
    CONSTRUCTED = "constructed"
    STARTED = "started"
    READY = "ready"
    DEGRADED = "degraded"
    DESTROYED = "destroyed"


# Ports the managed binaries listen on unless configured otherwise.
DEFAULT_PORTS: Dict[RoleKind, int] = {
    RoleKind.CACHE: 33333,
    RoleKind.COORDINATOR: 11311,
    RoleKind.TIMER: 7253,
    RoleKind.DNS: 5353,
}


@dataclass(frozen=True)
class ReadinessPolicy:
    """
    Cadence of the TCP readiness probe.

    The first connect attempt happens after ``initial_delay`` seconds, and
    failed attempts are retried every ``interval`` seconds until ``attempts``
    have been made.
    """
    initial_delay: float = 0.01
    interval: float = 1.0
    attempts: int = 5

    def __post_init__(self):
        """Validate policy values after initialization."""
        if self.initial_delay < 0:
            raise ValueError(f"Invalid initial_delay: {self.initial_delay}")
        if self.interval <= 0:
            raise ValueError(f"Invalid interval: {self.interval}")
        if self.attempts < 1:
            raise ValueError(f"Invalid attempts: {self.attempts}")

    def attempts_for(self, timeout: Optional[float]) -> int:
        """Number of connect attempts that fit in ``timeout`` seconds."""
        if timeout is None:
            return self.attempts
        return max(1, math.ceil(timeout / self.interval))

    @property
    def budget(self) -> float:
        """Upper bound on the time a full poll sleeps, in seconds."""
        return self.initial_delay + self.interval * self.attempts

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadinessPolicy":
        """Create ReadinessPolicy from dictionary representation."""
        return cls(
            initial_delay=float(data.get("initial_delay", cls.initial_delay)),
            interval=float(data.get("interval", cls.interval)),
            attempts=int(data.get("attempts", cls.attempts)),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert ReadinessPolicy to dictionary representation."""
        return asdict(self)
