from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Dict, Generic, List, TypeVar

from src.alerting.schemas.monitoring import ResourceRef, WatchEvent, WatchEventType

logger = logging.getLogger(__name__)

E = TypeVar("E")


class ResourceIndex(Generic[E]):
    """
    In-memory cache of entries derived from watched resources, keyed by resource ref.

    Every Added/Modified event replaces the whole batch of entries for that resource and
    every Deleted event drops it, so watch resync redelivery and edits within a resource
    never leave stale entries behind. The cache is always rebuildable by relisting.

    Only the watch consumer task writes; request handlers read. One lock guards all state
    and nothing under it performs I/O.
    """

    kind = "resource"

    def __init__(self) -> None:
        self._lock = RLock()
        self._entries: Dict[ResourceRef, List[E]] = {}

    def _derive(self, resource: Any) -> List[E]:
        raise NotImplementedError

    def _on_replace(self, ref: ResourceRef, old: List[E], new: List[E]) -> None:
        """Hook for subclasses maintaining secondary maps; called with the lock held."""

    def upsert_resource(self, resource: Any) -> None:
        ref = resource.ref
        with self._lock:
            new = self._derive(resource)
            old = self._entries.pop(ref, [])
            self._entries[ref] = new
            self._on_replace(ref, old, new)
        logger.debug("Indexed %s %s (%d entries)", self.kind, ref, len(new))

    def remove_resource(self, ref: ResourceRef) -> None:
        with self._lock:
            old = self._entries.pop(ref, [])
            self._on_replace(ref, old, [])
        logger.debug("Removed %s %s from index", self.kind, ref)

    # PUBLIC_INTERFACE
    def apply(self, event: WatchEvent) -> None:
        """Apply one watch event to the index."""
        if event.type in (WatchEventType.added, WatchEventType.modified):
            self.upsert_resource(event.object)
        elif event.type == WatchEventType.deleted:
            self.remove_resource(event.object.ref)
        else:
            logger.warning("Error event while watching %s: %s", self.kind, event.object)

    def resource_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries_for(self, ref: ResourceRef) -> List[E]:
        with self._lock:
            return list(self._entries.get(ref, []))
