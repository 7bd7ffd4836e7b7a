"""Service Registry Core.

Provides registry primitives:
- Service descriptors and bind addresses
- Membership queries
- Change records and membership diffing
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class BindAddr:
    """Network address a service instance listens on."""
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def from_string(cls, text: str) -> "BindAddr":
        """Parse ``host:port`` (or ``[v6]:port``)."""
        host, sep, port = text.strip().rpartition(":")
        if not sep or not host or not port:
            raise ValueError(f"Invalid bind address: {text!r}")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        try:
            return cls(host=host, port=int(port))
        except ValueError:
            raise ValueError(f"Invalid port in bind address: {text!r}") from None


@dataclass(frozen=True)
class ServiceDescriptor:
    """A registered service instance. Identity is ``instance_id``."""
    instance_id: str
    name: str
    version: str
    region: str
    address: BindAddr

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "name": self.name,
            "version": self.version,
            "region": self.region,
            "address": str(self.address),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServiceDescriptor":
        address = data["address"]
        if not isinstance(address, BindAddr):
            address = BindAddr.from_string(str(address))
        return cls(
            instance_id=data["instance_id"],
            name=data["name"],
            version=data["version"],
            region=data["region"],
            address=address,
        )


class MatchMode(Enum):
    """How a query's specified fields combine.

    ANY is cross-field: each specified value is compared with the
    descriptor's name, region and version alike, so {name: "A"} matches an
    instance registered as {name: "B", region: "A"}. ALL compares field to field.
    """
    ANY = "any"  # any specified value equals name, region or version
    ALL = "all"  # every specified field equals the same descriptor field


@dataclass(frozen=True)
class ServiceQuery:
    """Query for service instances. Empty fields mean "don't care"."""
    name: str = ""
    region: str = ""
    version: str = ""
    match_mode: Optional[MatchMode] = None

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.region or self.version)

    def matches(
        self,
        descriptor: ServiceDescriptor,
        default_mode: MatchMode = MatchMode.ANY,
    ) -> bool:
        """Check if a descriptor matches this query."""
        if self.is_empty:
            return True

        specified = {
            key: value
            for key, value in (
                ("name", self.name),
                ("region", self.region),
                ("version", self.version),
            )
            if value
        }

        if (self.match_mode or default_mode) is MatchMode.ALL:
            return all(getattr(descriptor, key) == value for key, value in specified.items())

        # OR across fields; a value may hit any of the descriptor's fields
        candidates = (descriptor.name, descriptor.region, descriptor.version)
        return any(value in candidates for value in specified.values())

    @classmethod
    def parse(cls, text: str, match_mode: Optional[MatchMode] = None) -> "ServiceQuery":
        """Build a query from ``"name=worker,region=us"``."""
        fields: Dict[str, str] = {}
        for part in text.split(","):
            part = part.strip()
            if not part:
                continue
            key, sep, value = part.partition("=")
            key = key.strip().lower()
            if not sep or key not in ("name", "region", "version"):
                raise ValueError(f"Invalid query term: {part!r}")
            fields[key] = value.strip()
        return cls(match_mode=match_mode, **fields)


class ChangeKind(Enum):
    """Kind of membership change."""
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeRecord:
    """One membership delta produced by a diff pass."""
    descriptor: ServiceDescriptor
    kind: ChangeKind
    observed_at: float = field(default_factory=time.time, compare=False)

    @property
    def instance_id(self) -> str:
        return self.descriptor.instance_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "observed_at": self.observed_at,
            **self.descriptor.to_dict(),
        }


def compute_changes(
    previous: Mapping[str, ServiceDescriptor],
    current: Mapping[str, ServiceDescriptor],
) -> List[ChangeRecord]:
    """Diff two membership views keyed by instance id.

    Batch order is pure additions, pure removals, then Removed/Added pairs for
    instances whose fields changed.
    """
    added: List[ChangeRecord] = []
    removed: List[ChangeRecord] = []
    replaced: List[ChangeRecord] = []

    for instance_id, descriptor in current.items():
        old = previous.get(instance_id)
        if old is None:
            added.append(ChangeRecord(descriptor, ChangeKind.ADDED))
        elif old != descriptor:
            replaced.append(ChangeRecord(old, ChangeKind.REMOVED))
            replaced.append(ChangeRecord(descriptor, ChangeKind.ADDED))

    for instance_id, old in previous.items():
        if instance_id not in current:
            removed.append(ChangeRecord(old, ChangeKind.REMOVED))

    return added + removed + replaced
