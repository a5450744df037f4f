from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from src.alerting.errors import (
    ConflictError,
    NotAllowedError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from src.alerting.k8s.client import KubeApiError, KubeNotFoundError
from src.alerting.k8s.resources import AlertRelabelConfigStore, PrometheusRuleStore
from src.alerting.schemas.common import RuleSource
from src.alerting.schemas.monitoring import (
    AlertRelabelConfig,
    PrometheusRule,
    RelabelAction,
    RelabelConfig,
    ResourceRef,
    Rule,
    RuleGroup,
)
from src.alerting.services.identity import compute_rule_id, stamp_rule_id, strip_volatile_annotations
from src.alerting.services.platform import PLATFORM_RULE_PREFIX, is_platform_resource
from src.alerting.services.relabel_index import ALERTNAME_LABEL, RelabelOverlayIndex, apply_overlay
from src.alerting.services.rule_index import RuleIndex

logger = logging.getLogger(__name__)

DEFAULT_RULE_GROUP = "user-defined-rules"

_DNS1123_INVALID = re.compile(r"[^a-z0-9.-]+")
_DNS1123_MAX_LEN = 253


def relabel_config_name(resource_name: str, alert_name: str) -> str:
    """Deterministic AlertRelabelConfig name for overlays of one alert in one PrometheusRule."""
    raw = f"{resource_name}-{alert_name}-relabel".lower()
    name = _DNS1123_INVALID.sub("-", raw).strip("-.")
    return name[:_DNS1123_MAX_LEN].rstrip("-.")


def diff_labels_to_directives(alert_name: str, original: Dict[str, str], desired: Dict[str, str]) -> List[RelabelConfig]:
    """
    Turn a label diff into relabel directives.

    Added or changed keys become Replace directives keyed on (alertname, key). Removed keys
    become Replace directives keyed on alertname alone with an empty replacement, which
    clears the target label.
    """
    directives: List[RelabelConfig] = []
    for key in sorted(desired):
        value = desired[key]
        if key in original and original[key] == value:
            continue
        directives.append(
            RelabelConfig(
                source_labels=[ALERTNAME_LABEL, key],
                regex=f"{alert_name};.*",
                target_label=key,
                replacement=value,
                action=RelabelAction.replace.value,
            )
        )
    for key in sorted(original):
        if key in desired:
            continue
        directives.append(
            RelabelConfig(
                source_labels=[ALERTNAME_LABEL],
                regex=alert_name,
                target_label=key,
                replacement="",
                action=RelabelAction.replace.value,
            )
        )
    return directives


def _find_rule(pr: PrometheusRule, rule_id: str) -> Optional[Tuple[RuleGroup, Rule]]:
    for group in pr.groups:
        for rule in group.rules:
            if _safe_rule_id(rule) == rule_id:
                return group, rule
    return None


def _safe_rule_id(rule: Rule) -> Optional[str]:
    try:
        return compute_rule_id(rule)
    except ValidationError:
        return None


class RuleMutator:
    """
    Request-driven operations on alert rules stored inside PrometheusRule resources.

    Reads go through the two watch-fed indexes; writes go straight to the Kubernetes
    stores. The indexes catch up through the watch, never by writing to them here.
    """

    def __init__(
        self,
        rules: PrometheusRuleStore,
        relabels: AlertRelabelConfigStore,
        rule_index: RuleIndex,
        relabel_index: RelabelOverlayIndex,
        *,
        platform_prefix: str = PLATFORM_RULE_PREFIX,
        default_group: str = DEFAULT_RULE_GROUP,
    ):
        self._rules = rules
        self._relabels = relabels
        self._rule_index = rule_index
        self._relabel_index = relabel_index
        self._platform_prefix = platform_prefix
        self._default_group = default_group or DEFAULT_RULE_GROUP

    def is_platform(self, ref: ResourceRef) -> bool:
        return is_platform_resource(ref, self._platform_prefix)

    async def _get_resource(self, ref: ResourceRef) -> PrometheusRule:
        try:
            return await self._rules.get(ref.namespace, ref.name)
        except KubeNotFoundError as e:
            raise NotFoundError("PrometheusRule", str(ref)) from e
        except KubeApiError as e:
            raise StorageError(f"failed to get PrometheusRule {ref}: {e.message}") from e

    async def _get_raw_rule(self, rule_id: str) -> Tuple[ResourceRef, Rule]:
        ref = self._rule_index.lookup(rule_id)
        pr = await self._get_resource(ref)
        found = _find_rule(pr, rule_id)
        if found is None:
            raise NotFoundError("alert rule", rule_id, f"in PrometheusRule {ref}")
        return ref, found[1]

    # PUBLIC_INTERFACE
    async def create_user_defined_alert_rule(self, rule: Rule, target: ResourceRef, group_name: str = "") -> str:
        """
        Add `rule` to a user-defined PrometheusRule and return its content-addressed id.

        Raises ValidationError for a missing target or invalid rule, NotAllowedError for a
        platform target, ConflictError if a rule with identical content is already indexed.
        """
        if not target.name or not target.namespace:
            raise ValidationError("PrometheusRule Name and Namespace must be specified")
        if self.is_platform(target):
            raise NotAllowedError(f"cannot add alert rule to platform-managed PrometheusRule {target}")

        rule_id = compute_rule_id(rule)
        if rule_id in self._rule_index:
            raise ConflictError(f"alert rule with exact config already exists (id {rule_id})")

        group_name = group_name or self._default_group
        try:
            await self._rules.add_rule(target, group_name, stamp_rule_id(rule))
        except KubeApiError as e:
            raise StorageError(f"failed to add rule to PrometheusRule {target}: {e.message}") from e

        logger.info("Created alert rule id=%s alert=%s in %s group=%s", rule_id, rule.name, target, group_name)
        return rule_id

    # PUBLIC_INTERFACE
    async def create_from_existing_rule(
        self, source_rule_id: str, alert_name: str, target: ResourceRef, group_name: str = ""
    ) -> str:
        """Clone the effective content of an existing rule under a new alert name."""
        alert_name = (alert_name or "").strip()
        if not alert_name:
            raise ValidationError("alert name is required when cloning a rule")
        source = await self.get_rule_by_id(source_rule_id)
        clone = strip_volatile_annotations(source)
        clone.alert = alert_name
        clone.record = ""
        return await self.create_user_defined_alert_rule(clone, target, group_name)

    # PUBLIC_INTERFACE
    async def delete_rule_by_id(self, rule_id: str) -> None:
        """
        Remove every rule whose recomputed id equals `rule_id` from its PrometheusRule.

        Emptied groups are dropped and an emptied resource is deleted. Nothing matching is
        a successful no-op.
        """
        ref = self._rule_index.lookup(rule_id)
        try:
            pr = await self._rules.get(ref.namespace, ref.name)
        except KubeNotFoundError:
            logger.info("PrometheusRule %s already gone; nothing to delete for id=%s", ref, rule_id)
            return
        except KubeApiError as e:
            raise StorageError(f"failed to get PrometheusRule {ref}: {e.message}") from e

        removed = 0
        kept_groups: List[RuleGroup] = []
        for group in pr.groups:
            kept = [r for r in group.rules if _safe_rule_id(r) != rule_id]
            removed += len(group.rules) - len(kept)
            if kept:
                group.rules = kept
                kept_groups.append(group)

        if removed == 0:
            logger.info("No rule with id=%s left in %s; nothing to delete", rule_id, ref)
            return

        if not kept_groups:
            try:
                await self._rules.delete(ref.namespace, ref.name)
            except KubeNotFoundError:
                return
            except KubeApiError as e:
                raise StorageError(f"failed to delete PrometheusRule {ref}: {e.message}") from e
            logger.info("Deleted PrometheusRule %s (last rule id=%s removed)", ref, rule_id)
            return

        pr.spec.groups = kept_groups
        try:
            await self._rules.update(pr)
        except KubeApiError as e:
            raise StorageError(f"failed to update PrometheusRule {ref}: {e.message}") from e
        logger.info("Removed %d rule(s) id=%s from %s", removed, rule_id, ref)

    # PUBLIC_INTERFACE
    async def delete_user_defined_rule_by_id(self, rule_id: str) -> None:
        """Like delete_rule_by_id, but refuses rules owned by platform-managed resources."""
        ref = self._rule_index.lookup(rule_id)
        if self.is_platform(ref):
            raise NotAllowedError("cannot delete alert rule from a platform-managed PrometheusRule")
        await self.delete_rule_by_id(rule_id)

    # PUBLIC_INTERFACE
    async def get_rule_by_id(self, rule_id: str) -> Rule:
        """Return the effective rule: raw storage content with relabel overlays applied for platform rules."""
        ref, rule = await self._get_raw_rule(rule_id)
        if self.is_platform(ref) and rule.alert:
            entries = self._relabel_index.find_directives_for_alert_name(rule.alert)
            if entries:
                return apply_overlay(rule, entries)
        return rule

    # PUBLIC_INTERFACE
    async def update_platform_alert_rule(self, rule_id: str, desired: Rule) -> ResourceRef:
        """
        Change the labels of a platform rule through an AlertRelabelConfig overlay.

        The overlay for (resource, alert) is replaced wholesale on every call. A concurrent
        writer holding a stale resourceVersion fails with StorageError. Returns the
        AlertRelabelConfig ref.
        """
        ref = self._rule_index.lookup(rule_id)
        if not self.is_platform(ref):
            raise NotAllowedError("cannot update non-platform alert rule")

        _, original = await self._get_raw_rule(rule_id)
        directives = diff_labels_to_directives(original.alert, original.labels, desired.labels)
        if not directives:
            raise ValidationError("no label changes detected; platform rules only support label updates")

        arc_ref = ResourceRef(namespace=ref.namespace, name=relabel_config_name(ref.name, original.alert))
        try:
            arc = await self._relabels.get(arc_ref.namespace, arc_ref.name)
        except KubeNotFoundError:
            arc = None
        except KubeApiError as e:
            raise StorageError(f"failed to get AlertRelabelConfig {arc_ref}: {e.message}") from e

        try:
            if arc is None:
                await self._relabels.create(AlertRelabelConfig.new(arc_ref, directives))
            else:
                arc.spec.configs = directives
                await self._relabels.update(arc)
        except KubeApiError as e:
            verb = "create" if arc is None else "update"
            raise StorageError(f"failed to {verb} AlertRelabelConfig {arc_ref}: {e.message}") from e

        logger.info(
            "Applied %d relabel directive(s) for alert=%s id=%s via %s",
            len(directives),
            original.alert,
            rule_id,
            arc_ref,
        )
        return arc_ref

    # PUBLIC_INTERFACE
    async def list_rules(
        self,
        namespace: str = "",
        name: str = "",
        group_name: str = "",
        alert_name: str = "",
        labels: Optional[Dict[str, str]] = None,
        source: Optional[str] = None,
    ) -> List[Rule]:
        """List alert rules straight from storage, filtered. Not index-backed."""
        if name and not namespace:
            raise ValidationError("PrometheusRule Namespace must be specified when Name is provided")
        wanted_source: Optional[RuleSource] = None
        if source:
            try:
                wanted_source = RuleSource(source)
            except ValueError as e:
                raise ValidationError(f"unknown rule source {source!r}; expected 'platform' or 'user-defined'") from e

        try:
            if name:
                resources = [await self._rules.get(namespace, name)]
            else:
                resources = await self._rules.list(namespace)
        except KubeNotFoundError as e:
            raise NotFoundError("PrometheusRule", f"{namespace}/{name}") from e
        except KubeApiError as e:
            raise StorageError(f"failed to list PrometheusRules: {e.message}") from e

        selector = labels or {}
        out: List[Rule] = []
        for pr in resources:
            if wanted_source is not None:
                platform = self.is_platform(pr.ref)
                if platform != (wanted_source == RuleSource.platform):
                    continue
            for group in pr.groups:
                if group_name and group.name != group_name:
                    continue
                for rule in group.rules:
                    if not rule.is_alert:
                        continue
                    if alert_name and rule.alert != alert_name:
                        continue
                    if any(rule.labels.get(k) != v for k, v in selector.items()):
                        continue
                    out.append(rule)
        return out
