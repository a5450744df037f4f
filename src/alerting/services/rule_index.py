from __future__ import annotations

import logging
from typing import Dict, List, Set

from src.alerting.errors import NotFoundError, ValidationError
from src.alerting.schemas.monitoring import PrometheusRule, ResourceRef
from src.alerting.services.identity import compute_rule_id
from src.alerting.services.resource_index import ResourceIndex

logger = logging.getLogger(__name__)


class RuleIndex(ResourceIndex[str]):
    """Reverse index from alert rule id to the PrometheusRule holding it."""

    kind = "PrometheusRule"

    def __init__(self) -> None:
        super().__init__()
        # The same rule content may live in more than one resource.
        self._owners: Dict[str, Set[ResourceRef]] = {}

    def _derive(self, resource: PrometheusRule) -> List[str]:
        ids: List[str] = []
        for group in resource.groups:
            for rule in group.rules:
                if not rule.is_alert:
                    continue
                try:
                    ids.append(compute_rule_id(rule))
                except ValidationError:
                    logger.warning("Skipping unhashable rule in %s group=%s", resource.ref, group.name)
        return ids

    def _on_replace(self, ref: ResourceRef, old: List[str], new: List[str]) -> None:
        for rule_id in old:
            owners = self._owners.get(rule_id)
            if owners is None:
                continue
            owners.discard(ref)
            if not owners:
                del self._owners[rule_id]
        for rule_id in new:
            self._owners.setdefault(rule_id, set()).add(ref)

    # PUBLIC_INTERFACE
    def lookup(self, rule_id: str) -> ResourceRef:
        """Return the PrometheusRule holding `rule_id`; raises NotFoundError on a miss."""
        with self._lock:
            owners = self._owners.get(rule_id)
            if not owners:
                raise NotFoundError("alert rule", rule_id)
            # Smallest ref keeps the answer deterministic when content is duplicated.
            return min(owners)

    def __contains__(self, rule_id: object) -> bool:
        with self._lock:
            return bool(self._owners.get(rule_id))  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)
