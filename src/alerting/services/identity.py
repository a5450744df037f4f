from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List

from src.alerting.errors import ValidationError
from src.alerting.schemas.monitoring import Rule

# Annotation the service stamps onto rules it creates. Excluded from hashing so
# that stamping a rule with its own id does not change the id.
RULE_ID_ANNOTATION = "alert_rule_id"

VOLATILE_ANNOTATION_KEYS = frozenset({RULE_ID_ANNOTATION})


def _sorted_pairs(items: Dict[str, str], skip: Iterable[str] = ()) -> List[str]:
    skipped = set(skip)
    return sorted(f"{k}={v}" for k, v in items.items() if k not in skipped)


# PUBLIC_INTERFACE
def compute_rule_id(rule: Rule) -> str:
    """
    Return the content-addressed id of a rule: lowercase hex SHA-256, 64 characters.

    The hash input is the newline-joined tuple
      kind, name, expr, for, sorted labels "k=v" joined by ",", sorted non-volatile annotations
    so the id depends only on what the rule means, never on map ordering.

    Raises ValidationError if the rule has neither an alert nor a record name.
    """
    if rule.alert:
        kind, name = "alert", rule.alert
    elif rule.record:
        kind, name = "record", rule.record
    else:
        raise ValidationError("alert rule must have either 'alert' or 'record' field set")

    hash_input = "\n".join(
        [
            kind,
            name,
            str(rule.expr),
            rule.for_ or "",
            ",".join(_sorted_pairs(rule.labels)),
            ",".join(_sorted_pairs(rule.annotations, skip=VOLATILE_ANNOTATION_KEYS)),
        ]
    )
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


# PUBLIC_INTERFACE
def stamp_rule_id(rule: Rule) -> Rule:
    """Return a copy of `rule` carrying its own id under RULE_ID_ANNOTATION (debugging aid only)."""
    rule_id = compute_rule_id(rule)
    stamped = rule.model_copy(deep=True)
    stamped.annotations[RULE_ID_ANNOTATION] = rule_id
    return stamped


def strip_volatile_annotations(rule: Rule) -> Rule:
    cleaned = rule.model_copy(deep=True)
    for key in VOLATILE_ANNOTATION_KEYS:
        cleaned.annotations.pop(key, None)
    return cleaned
