from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from src.alerting.config import BackendConfig
from src.alerting.k8s.client import KubeManager
from src.alerting.k8s.resources import AlertRelabelConfigStore, PrometheusRuleStore
from src.alerting.k8s.watch import ResourceWatch
from src.alerting.schemas.monitoring import AlertRelabelConfig, PrometheusRule
from src.alerting.services.relabel_index import RelabelOverlayIndex
from src.alerting.services.rule_index import RuleIndex
from src.alerting.services.rule_mutator import RuleMutator


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    kube: KubeManager
    rules: PrometheusRuleStore
    relabels: AlertRelabelConfigStore
    rule_index: RuleIndex
    relabel_index: RelabelOverlayIndex
    mutator: RuleMutator
    rule_watch: Optional[ResourceWatch] = None
    relabel_watch: Optional[ResourceWatch] = None
    rule_watch_task: Optional[asyncio.Task[None]] = None
    relabel_watch_task: Optional[asyncio.Task[None]] = None


# PUBLIC_INTERFACE
def build_state(config: BackendConfig, kube: KubeManager) -> AppState:
    """Wire stores, indexes, watches and the mutator around one Kubernetes connection."""
    rules = PrometheusRuleStore(kube)
    relabels = AlertRelabelConfigStore(kube)
    rule_index = RuleIndex()
    relabel_index = RelabelOverlayIndex()
    mutator = RuleMutator(
        rules,
        relabels,
        rule_index,
        relabel_index,
        platform_prefix=config.platform_rule_prefix,
        default_group=config.default_rule_group,
    )
    return AppState(
        config=config,
        kube=kube,
        rules=rules,
        relabels=relabels,
        rule_index=rule_index,
        relabel_index=relabel_index,
        mutator=mutator,
        rule_watch=ResourceWatch(rules, PrometheusRule.from_k8s, config.watch_namespace),
        relabel_watch=ResourceWatch(relabels, AlertRelabelConfig.from_k8s, config.watch_namespace),
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig) -> None:
    """Initialize app.state with the Kubernetes connection, indexes and config."""
    app.state.state = build_state(config, KubeManager(config))


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
