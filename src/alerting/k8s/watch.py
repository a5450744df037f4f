from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, Optional

from src.alerting.k8s.resources import KubeResource
from src.alerting.schemas.monitoring import ResourceRef, WatchEvent, WatchEventType

logger = logging.getLogger(__name__)

HTTP_GONE = 410


def _resource_version(obj: Dict[str, Any]) -> Optional[str]:
    rv = (obj.get("metadata") or {}).get("resourceVersion")
    return str(rv) if rv else None


class ResourceWatch:
    """
    List-then-watch event source for one resource kind.

    The initial list is delivered as ADDED events. A watch the server closes normally is
    resumed from the last seen resourceVersion; an expired watch (410 Gone) triggers a
    relist, with DELETED events for resources that vanished in the gap. Transport errors
    propagate to the consumer.
    """

    def __init__(self, resource: KubeResource, parse: Callable[[Dict[str, Any]], Any], namespace: str = ""):
        self._resource = resource
        self._parse = parse
        self._namespace = namespace
        self.kind = resource.plural
        self._last_resource_version: Optional[str] = None

    async def _relist(self, known: Dict[ResourceRef, Any]) -> AsyncIterator[WatchEvent]:
        items, resource_version = await self._resource.list_raw(self._namespace)
        fresh: Dict[ResourceRef, Any] = {}
        for item in items:
            obj = self._parse(item)
            fresh[obj.ref] = obj
        for ref, obj in list(known.items()):
            if ref not in fresh:
                yield WatchEvent(WatchEventType.deleted, obj)
        known.clear()
        known.update(fresh)
        for obj in fresh.values():
            yield WatchEvent(WatchEventType.added, obj)
        self._last_resource_version = resource_version
        logger.info("Listed %d %s (resourceVersion=%s)", len(fresh), self.kind, resource_version)

    # PUBLIC_INTERFACE
    async def events(self) -> AsyncIterator[WatchEvent]:
        """Yield watch events for the lifetime of the process."""
        known: Dict[ResourceRef, Any] = {}
        self._last_resource_version = None
        needs_list = True

        while True:
            if needs_list:
                async for event in self._relist(known):
                    yield event
                needs_list = False

            async with aclosing(self._resource.watch_raw(self._namespace, self._last_resource_version)) as stream:
                async for raw in stream:
                    event_type = raw.get("type")
                    obj = raw.get("object") or {}

                    if event_type == "BOOKMARK":
                        self._last_resource_version = _resource_version(obj) or self._last_resource_version
                        continue

                    if event_type == WatchEventType.error.value:
                        if obj.get("code") == HTTP_GONE:
                            logger.info("Watch on %s expired; relisting", self.kind)
                            needs_list = True
                            break
                        yield WatchEvent(WatchEventType.error, obj)
                        continue

                    try:
                        kind = WatchEventType(event_type)
                    except ValueError:
                        logger.warning("Ignoring unknown watch event type %r on %s", event_type, self.kind)
                        continue

                    parsed = self._parse(obj)
                    self._last_resource_version = _resource_version(obj) or self._last_resource_version
                    if kind == WatchEventType.deleted:
                        known.pop(parsed.ref, None)
                    else:
                        known[parsed.ref] = parsed
                    yield WatchEvent(kind, parsed)

            if not needs_list:
                logger.debug("Watch on %s closed by server; resuming from %s", self.kind, self._last_resource_version)
