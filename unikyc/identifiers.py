"""
UniKYC Identifier Resolver

Maps a human-readable name-service label (e.g. "alice.eth") or a raw
address literal to the CanonicalIdentifier that keys a KYC record.

Rules:
- An address literal (0x + 40 hex digits, any case) is already canonical;
  it is lowercased and returned without any lookup.
- A label is normalized and resolved through its forward record. If the
  target address carries several conflicting backward records, the
  resolution is ambiguous and fails rather than guessing.

The resolver holds no state of its own and is safe to share between
threads.
"""

import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .config import load_json_cached
from .errors import ResolutionError

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: str) -> bool:
    return bool(ADDRESS_PATTERN.match(value.strip()))


def normalize_address(value: str) -> str:
    """Canonical address form: stripped and lowercased."""
    value = value.strip()
    if not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Not an address literal: {value!r}")
    return value.lower()


def normalize_label(value: str) -> str:
    return value.strip().lower()


@dataclass(frozen=True)
class CanonicalIdentifier:
    """
    Normalized account reference.

    Equality and hashing use only ``address``: a display name is
    informational and never changes which record an identifier keys.
    """
    address: str
    name: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanonicalIdentifier):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalIdentifier":
        return cls(address=normalize_address(data["address"]), name=data.get("name"))


# =============================================================================
# NAME SERVICE COLLABORATORS
# =============================================================================

class NameService(ABC):
    """Read-only name-service interface queried by the resolver."""

    @abstractmethod
    def resolve_forward(self, label: str) -> Optional[str]:
        """Address the label points at, or None if there is no forward record."""
        pass

    @abstractmethod
    def resolve_backward(self, address: str) -> List[str]:
        """All labels claiming ``address`` as their primary name (may be empty)."""
        pass


class InMemoryNameService(NameService):
    """
    In-memory name service for development/testing.

    Forward and backward records are managed independently, as they are
    on a real registry where a reverse record can go stale.
    """

    def __init__(self):
        self._forward: Dict[str, str] = {}
        self._backward: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def set_forward(self, label: str, address: str) -> None:
        with self._lock:
            self._forward[normalize_label(label)] = normalize_address(address)

    def add_backward(self, address: str, label: str) -> None:
        with self._lock:
            labels = self._backward.setdefault(normalize_address(address), [])
            label = normalize_label(label)
            if label not in labels:
                labels.append(label)

    def register(self, label: str, address: str) -> None:
        """Set matching forward and backward records."""
        self.set_forward(label, address)
        self.add_backward(address, label)

    def remove_forward(self, label: str) -> None:
        with self._lock:
            self._forward.pop(normalize_label(label), None)

    def resolve_forward(self, label: str) -> Optional[str]:
        with self._lock:
            return self._forward.get(normalize_label(label))

    def resolve_backward(self, address: str) -> List[str]:
        with self._lock:
            return list(self._backward.get(address.lower(), []))


class JsonFileNameService(NameService):
    """
    Name service backed by a JSON snapshot file.

    Format::

        {"forward": {"alice.eth": "0x..."},
         "backward": {"0x...": ["alice.eth"]}}

    The file goes through the cached config loader, so edits are picked up
    after the cache TTL.
    """

    def __init__(self, path: str):
        self._path = path

    def _snapshot(self) -> Dict[str, Any]:
        return load_json_cached(self._path)

    def resolve_forward(self, label: str) -> Optional[str]:
        forward = self._snapshot().get("forward", {})
        target = forward.get(normalize_label(label))
        return target.lower() if target else None

    def resolve_backward(self, address: str) -> List[str]:
        backward = self._snapshot().get("backward", {})
        for key, labels in backward.items():
            if key.lower() == address.lower():
                if isinstance(labels, str):
                    return [labels]
                return list(labels)
        return []


# =============================================================================
# RESOLVER
# =============================================================================

class IdentifierResolver:
    """
    Resolves names and addresses to CanonicalIdentifiers.

    Usage:
        resolver = IdentifierResolver(name_service)
        ident = resolver.resolve("alice.eth")
        same = resolver.resolve(ident.address)
    """

    def __init__(self, name_service: NameService):
        self.name_service = name_service

    def resolve(self, value: str) -> CanonicalIdentifier:
        """
        Resolve ``value`` to a canonical identifier.

        Raises:
            ResolutionError: NOT_FOUND for blank input or a label without a
                forward record; AMBIGUOUS when the target address has
                conflicting backward records.
        """
        if not isinstance(value, str) or not value.strip():
            raise ResolutionError.not_found(str(value))

        if is_address(value):
            return CanonicalIdentifier(address=normalize_address(value))

        label = normalize_label(value)
        target = self.name_service.resolve_forward(label)
        if not target:
            raise ResolutionError.not_found(label)
        try:
            address = normalize_address(target)
        except ValueError:
            raise ResolutionError.not_found(label)

        # A single stale reverse record does not override the forward target.
        backward = _distinct(self.name_service.resolve_backward(address))
        if len(backward) > 1:
            raise ResolutionError.ambiguous(label, address)

        return CanonicalIdentifier(address=address, name=label)

    def reverse(self, address: str) -> CanonicalIdentifier:
        """
        Canonical identifier for an address, with a display name attached
        only when the backward record is confirmed by its forward record.
        """
        address = normalize_address(address)
        labels = _distinct(self.name_service.resolve_backward(address))
        if len(labels) == 1:
            forward = self.name_service.resolve_forward(labels[0])
            if forward and forward.lower() == address:
                return CanonicalIdentifier(address=address, name=labels[0])
        return CanonicalIdentifier(address=address)


def _distinct(labels: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for label in labels:
        label = normalize_label(label)
        if label not in seen:
            seen.append(label)
    return seen
