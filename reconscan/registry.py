"""
Probe Registry

Holds the probes a deployment knows about, in registration order, and hands
out the enabled subset for a scan. Scans hold() the registry while they run,
which makes it read-only until the last scan releases it.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from .cancellation import CancellationToken
from .errors import DuplicateProbeName, RegistryLocked
from .models import Finding, ScanType

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[str, CancellationToken], Awaitable[List[Finding]]]

# Categories run by ScanType.QUICK: the cheap passive checks only.
SCAN_TYPE_PRESETS: Dict[ScanType, Optional[frozenset]] = {
    ScanType.FULL: None,
    ScanType.QUICK: frozenset({"headers", "cors", "exposure"}),
}


@dataclass(frozen=True)
class ProbeDescriptor:
    """
    One pluggable check.

    run(target, token) must be a coroutine function returning a list of
    Finding (an empty list means "nothing found", which is not an error).
    It should honour token, but the orchestrator enforces timeout either way.
    """
    name: str
    category: str
    timeout: float
    run: ProbeFunc
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("Probe name must not be empty")
        if self.timeout <= 0:
            raise ValueError(f"Probe {self.name!r} timeout must be positive, got {self.timeout}")


class ProbeRegistry:
    def __init__(self, probes: Iterable[ProbeDescriptor] = ()):
        self._probes: Dict[str, ProbeDescriptor] = {}
        self._holders = 0
        for probe in probes:
            self.register(probe)

    def __len__(self) -> int:
        return len(self._probes)

    def __contains__(self, name: str) -> bool:
        return name in self._probes

    def __iter__(self) -> Iterator[ProbeDescriptor]:
        return iter(list(self._probes.values()))

    @property
    def locked(self) -> bool:
        return self._holders > 0

    def register(self, descriptor: ProbeDescriptor) -> ProbeDescriptor:
        self._ensure_writable()
        if descriptor.name in self._probes:
            raise DuplicateProbeName(descriptor.name)
        self._probes[descriptor.name] = descriptor
        logger.debug("Registered probe %s (%s)", descriptor.name, descriptor.category)
        return descriptor

    def unregister(self, name: str) -> None:
        self._ensure_writable()
        self._probes.pop(name, None)

    def get(self, name: str) -> ProbeDescriptor:
        return self._probes[name]

    def categories(self) -> List[str]:
        seen: Dict[str, None] = {}
        for probe in self._probes.values():
            seen.setdefault(probe.category, None)
        return list(seen)

    def enabled(self, categories: Optional[Iterable[str]] = None) -> List[ProbeDescriptor]:
        """Probes whose category is in the allow-set (all when None), in registration order."""
        if categories is None:
            return list(self._probes.values())
        allowed = set(categories)
        return [p for p in self._probes.values() if p.category in allowed]

    def resolve(self, names: Sequence[str]) -> List[ProbeDescriptor]:
        """Look up a pinned probe list; raises KeyError naming the missing probes."""
        missing = [name for name in names if name not in self._probes]
        if missing:
            raise KeyError(f"Unknown probes: {', '.join(missing)}")
        return [self._probes[name] for name in names]

    @contextmanager
    def hold(self):
        self._holders += 1
        try:
            yield self
        finally:
            self._holders -= 1

    def _ensure_writable(self) -> None:
        if self._holders:
            raise RegistryLocked(f"Registry is in use by {self._holders} running scan(s)")


def categories_for(scan_type: ScanType, enabled_categories: Optional[Iterable[str]]) -> Optional[List[str]]:
    """
    Combine a scan type with an explicit category list.

    Explicit categories always win. CUSTOM without categories is rejected
    by the caller; FULL without categories means "everything".
    """
    if enabled_categories is not None:
        return list(enabled_categories)
    if scan_type == ScanType.CUSTOM:
        raise ValueError("Custom scans need enabled_categories")
    preset = SCAN_TYPE_PRESETS.get(scan_type)
    return sorted(preset) if preset is not None else None
