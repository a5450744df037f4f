from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from src.alerting.k8s.client import KubeManager, KubeNotFoundError
from src.alerting.schemas.monitoring import (
    ALERT_RELABEL_CONFIG_API_VERSION,
    PROMETHEUS_RULE_API_VERSION,
    AlertRelabelConfig,
    PrometheusRule,
    ResourceRef,
    Rule,
    RuleGroup,
)

logger = logging.getLogger(__name__)


class KubeResource:
    """Raw JSON access to one namespaced custom resource kind."""

    def __init__(self, kube: KubeManager, api_version: str, plural: str):
        self._kube = kube
        self.api_version = api_version
        self.plural = plural

    def path(self, namespace: str = "", name: str = "") -> str:
        parts = [f"/apis/{self.api_version}"]
        if namespace:
            parts.append(f"namespaces/{namespace}")
        parts.append(self.plural)
        if name:
            parts.append(name)
        return "/".join(parts)

    async def list_raw(self, namespace: str = "") -> Tuple[List[Dict[str, Any]], str]:
        """Return (items, list resourceVersion)."""
        body = await self._kube.request("GET", self.path(namespace))
        items = body.get("items") or []
        resource_version = str((body.get("metadata") or {}).get("resourceVersion") or "")
        return items, resource_version

    async def get_raw(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._kube.request("GET", self.path(namespace, name))

    async def create_raw(self, namespace: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        # The API server refuses a create that carries a resourceVersion.
        metadata = dict(obj.get("metadata") or {})
        metadata.pop("resourceVersion", None)
        return await self._kube.request("POST", self.path(namespace), json={**obj, "metadata": metadata})

    async def replace_raw(self, namespace: str, name: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        return await self._kube.request("PUT", self.path(namespace, name), json=obj)

    async def delete_raw(self, namespace: str, name: str) -> None:
        await self._kube.request("DELETE", self.path(namespace, name))

    async def watch_raw(self, namespace: str = "", resource_version: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded watch events until the server closes the stream."""
        params = {"watch": "true", "allowWatchBookmarks": "true"}
        if resource_version:
            params["resourceVersion"] = resource_version
        async with self._kube.stream(self.path(namespace), params=params) as resp:
            async for line in resp.aiter_lines():
                if not line.strip():
                    continue
                yield json.loads(line)


class PrometheusRuleStore(KubeResource):
    """Typed CRUD for PrometheusRule resources."""

    def __init__(self, kube: KubeManager):
        super().__init__(kube, PROMETHEUS_RULE_API_VERSION, "prometheusrules")

    async def list(self, namespace: str = "") -> List[PrometheusRule]:
        items, _ = await self.list_raw(namespace)
        return [PrometheusRule.from_k8s(item) for item in items]

    async def get(self, namespace: str, name: str) -> PrometheusRule:
        return PrometheusRule.from_k8s(await self.get_raw(namespace, name))

    async def create(self, pr: PrometheusRule) -> PrometheusRule:
        return PrometheusRule.from_k8s(await self.create_raw(pr.metadata.namespace, pr.to_k8s()))

    async def update(self, pr: PrometheusRule) -> PrometheusRule:
        return PrometheusRule.from_k8s(
            await self.replace_raw(pr.metadata.namespace, pr.metadata.name, pr.to_k8s())
        )

    async def delete(self, namespace: str, name: str) -> None:
        await self.delete_raw(namespace, name)

    # PUBLIC_INTERFACE
    async def add_rule(self, ref: ResourceRef, group_name: str, rule: Rule) -> PrometheusRule:
        """
        Append `rule` to group `group_name` of the PrometheusRule at `ref`.

        The group is created when absent. A missing PrometheusRule is created already holding
        the rule, so an empty resource is never persisted.
        """
        try:
            pr = await self.get(ref.namespace, ref.name)
        except KubeNotFoundError:
            logger.info("Creating PrometheusRule %s for group=%s", ref, group_name)
            return await self.create(PrometheusRule.new(ref, [RuleGroup(name=group_name, rules=[rule])]))

        for group in pr.groups:
            if group.name == group_name:
                group.rules.append(rule)
                break
        else:
            pr.groups.append(RuleGroup(name=group_name, rules=[rule]))
        return await self.update(pr)


class AlertRelabelConfigStore(KubeResource):
    """Typed CRUD for AlertRelabelConfig resources."""

    def __init__(self, kube: KubeManager):
        super().__init__(kube, ALERT_RELABEL_CONFIG_API_VERSION, "alertrelabelconfigs")

    async def list(self, namespace: str = "") -> List[AlertRelabelConfig]:
        items, _ = await self.list_raw(namespace)
        return [AlertRelabelConfig.from_k8s(item) for item in items]

    async def get(self, namespace: str, name: str) -> AlertRelabelConfig:
        return AlertRelabelConfig.from_k8s(await self.get_raw(namespace, name))

    async def create(self, arc: AlertRelabelConfig) -> AlertRelabelConfig:
        return AlertRelabelConfig.from_k8s(await self.create_raw(arc.metadata.namespace, arc.to_k8s()))

    async def update(self, arc: AlertRelabelConfig) -> AlertRelabelConfig:
        return AlertRelabelConfig.from_k8s(
            await self.replace_raw(arc.metadata.namespace, arc.metadata.name, arc.to_k8s())
        )
