from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from src.alerting.schemas.monitoring import (
    AlertRelabelConfig,
    RelabelAction,
    RelabelConfig,
    ResourceRef,
    Rule,
)
from src.alerting.services.resource_index import ResourceIndex

logger = logging.getLogger(__name__)

ALERTNAME_LABEL = "alertname"
DEFAULT_SEPARATOR = ";"
MATCH_ANY = ".*"

# Actions replayed by apply_overlay; the rest are recognized but left alone.
_APPLIED_ACTIONS = {RelabelAction.replace, RelabelAction.label_drop}


@dataclass(frozen=True)
class RelabelIndexEntry:
    """A literal relabel directive, with its regex split into one token per source label."""

    ref: ResourceRef
    position: int
    config: RelabelConfig
    match: Dict[str, str] = field(default_factory=dict)

    @property
    def alert_name(self) -> str:
        return self.match.get(ALERTNAME_LABEL, "")


def parse_directive(ref: ResourceRef, position: int, config: RelabelConfig) -> Optional[RelabelIndexEntry]:
    """
    Parse one directive into an index entry, or None if it is not overlay-shaped.

    Retained directives name `alertname` among their source labels and have a regex that
    splits on the separator into exactly one literal token per source label.
    """
    if ALERTNAME_LABEL not in config.source_labels or not config.regex:
        return None
    tokens = config.regex.split(config.separator or DEFAULT_SEPARATOR)
    if len(tokens) != len(config.source_labels):
        return None
    return RelabelIndexEntry(
        ref=ref,
        position=position,
        config=config,
        match=dict(zip(config.source_labels, tokens)),
    )


class RelabelOverlayIndex(ResourceIndex[RelabelIndexEntry]):
    """Cache of AlertRelabelConfig directives, searchable by alert name."""

    kind = "AlertRelabelConfig"

    def _derive(self, resource: AlertRelabelConfig) -> List[RelabelIndexEntry]:
        entries: List[RelabelIndexEntry] = []
        for position, config in enumerate(resource.spec.configs):
            entry = parse_directive(resource.ref, position, config)
            if entry is not None:
                entries.append(entry)
        return entries

    # PUBLIC_INTERFACE
    def find_directives_for_alert_name(self, alert_name: str) -> List[RelabelIndexEntry]:
        """All retained directives targeting `alert_name`, ordered by resource then position."""
        with self._lock:
            found = [
                entry
                for ref in sorted(self._entries)
                for entry in self._entries[ref]
                if entry.alert_name == alert_name
            ]
        return found


def _matches(entry: RelabelIndexEntry, rule: Rule, labels: Dict[str, str]) -> bool:
    for label, token in entry.match.items():
        if token == MATCH_ANY:
            continue
        value = rule.alert if label == ALERTNAME_LABEL else labels.get(label, "")
        if value != token:
            return False
    return True


# PUBLIC_INTERFACE
def apply_overlay(rule: Rule, entries: List[RelabelIndexEntry]) -> Rule:
    """
    Return a copy of `rule` with the relabel directives in `entries` replayed onto its labels.

    Only literal Replace and LabelDrop directives are applied. Keep/Drop/HashMod/LabelMap/
    LabelKeep and other actions need regex or hashing semantics and are skipped.
    """
    effective = rule.model_copy(deep=True)
    labels = effective.labels
    for entry in entries:
        action = RelabelAction.parse(entry.config.action)
        if action not in _APPLIED_ACTIONS:
            logger.debug("Relabel action %r in %s not applied to overlay", entry.config.action, entry.ref)
            continue
        target = entry.config.target_label
        if not target or not _matches(entry, rule, labels):
            continue
        if action == RelabelAction.label_drop or entry.config.replacement == "":
            labels.pop(target, None)
        else:
            labels[target] = entry.config.replacement
    return effective
