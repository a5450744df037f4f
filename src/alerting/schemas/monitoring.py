from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROMETHEUS_RULE_API_VERSION = "monitoring.coreos.com/v1"
ALERT_RELABEL_CONFIG_API_VERSION = "monitoring.openshift.io/v1"

# Metadata the API server owns; never sent back on writes. resourceVersion is kept:
# custom resources reject a PUT without it.
_SERVER_OWNED_METADATA = {"managedFields", "uid", "creationTimestamp", "generation"}


def _none_to_empty_dict(v: Any) -> Any:
    return {} if v is None else v


def _none_to_empty_list(v: Any) -> Any:
    return [] if v is None else v


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Namespaced name of a PrometheusRule or AlertRelabelConfig."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class Rule(BaseModel):
    """A single alerting or recording rule inside a PrometheusRule group."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    alert: str = Field("", description="Alert name; empty for recording rules.")
    record: str = Field("", description="Recorded series name; empty for alerting rules.")
    expr: Union[str, int] = Field("", description="PromQL expression (IntOrString upstream).")
    for_: Optional[str] = Field(default=None, alias="for", description="Pending duration, e.g. '5m'.")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def coerce_maps(cls, v: Any) -> Any:
        return _none_to_empty_dict(v)

    @property
    def name(self) -> str:
        return self.alert or self.record

    @property
    def is_alert(self) -> bool:
        return bool(self.alert)

    def to_k8s(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        for key in ("alert", "record", "labels", "annotations"):
            if not data.get(key):
                data.pop(key, None)
        return data


class RuleGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    rules: List[Rule] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def coerce_rules(cls, v: Any) -> Any:
        return _none_to_empty_list(v)

    def to_k8s(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, exclude={"rules"})
        data["rules"] = [r.to_k8s() for r in self.rules]
        return data


class ObjectMeta(BaseModel):
    """The subset of Kubernetes ObjectMeta this service reads; everything else is carried through."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    namespace: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def coerce_maps(cls, v: Any) -> Any:
        return _none_to_empty_dict(v)

    def to_k8s(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        for key in _SERVER_OWNED_METADATA:
            data.pop(key, None)
        for key in ("labels", "annotations"):
            if not data.get(key):
                data.pop(key, None)
        return data


class PrometheusRuleSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    groups: List[RuleGroup] = Field(default_factory=list)

    @field_validator("groups", mode="before")
    @classmethod
    def coerce_groups(cls, v: Any) -> Any:
        return _none_to_empty_list(v)


class PrometheusRule(BaseModel):
    """The rule-group resource: an ordered list of named groups of rules."""

    model_config = ConfigDict(populate_by_name=True)

    metadata: ObjectMeta
    spec: PrometheusRuleSpec = Field(default_factory=PrometheusRuleSpec)

    @classmethod
    def new(cls, ref: ResourceRef, groups: Optional[List[RuleGroup]] = None) -> "PrometheusRule":
        return cls(
            metadata=ObjectMeta(name=ref.name, namespace=ref.namespace),
            spec=PrometheusRuleSpec(groups=groups or []),
        )

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "PrometheusRule":
        return cls.model_validate({"metadata": obj.get("metadata") or {}, "spec": obj.get("spec") or {}})

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def groups(self) -> List[RuleGroup]:
        return self.spec.groups

    def to_k8s(self) -> Dict[str, Any]:
        spec = self.spec.model_dump(by_alias=True, exclude_none=True, exclude={"groups"})
        spec["groups"] = [g.to_k8s() for g in self.spec.groups]
        return {
            "apiVersion": PROMETHEUS_RULE_API_VERSION,
            "kind": "PrometheusRule",
            "metadata": self.metadata.to_k8s(),
            "spec": spec,
        }


class RelabelAction(str, Enum):
    """Relabel actions as spelled by AlertRelabelConfig."""

    replace = "Replace"
    keep = "Keep"
    drop = "Drop"
    hash_mod = "HashMod"
    label_map = "LabelMap"
    label_drop = "LabelDrop"
    label_keep = "LabelKeep"
    lowercase = "Lowercase"
    uppercase = "Uppercase"

    @classmethod
    def parse(cls, raw: str) -> Optional["RelabelAction"]:
        """Case-insensitive lookup; Prometheus spells actions in lower case."""
        wanted = (raw or "Replace").strip().lower()
        for action in cls:
            if action.value.lower() == wanted:
                return action
        return None


class RelabelConfig(BaseModel):
    """One relabel directive."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    source_labels: List[str] = Field(default_factory=list, alias="sourceLabels")
    separator: str = ""
    regex: str = ""
    target_label: str = Field("", alias="targetLabel")
    replacement: str = ""
    action: str = RelabelAction.replace.value

    @field_validator("source_labels", mode="before")
    @classmethod
    def coerce_labels(cls, v: Any) -> Any:
        return _none_to_empty_list(v)

    def to_k8s(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        for key in ("sourceLabels", "separator", "regex", "targetLabel"):
            if not data.get(key):
                data.pop(key, None)
        return data


class AlertRelabelConfigSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    configs: List[RelabelConfig] = Field(default_factory=list)

    @field_validator("configs", mode="before")
    @classmethod
    def coerce_configs(cls, v: Any) -> Any:
        return _none_to_empty_list(v)


class AlertRelabelConfig(BaseModel):
    """The relabel-config resource used as an overlay on platform alerts."""

    model_config = ConfigDict(populate_by_name=True)

    metadata: ObjectMeta
    spec: AlertRelabelConfigSpec = Field(default_factory=AlertRelabelConfigSpec)

    @classmethod
    def new(cls, ref: ResourceRef, configs: Optional[List[RelabelConfig]] = None) -> "AlertRelabelConfig":
        return cls(
            metadata=ObjectMeta(name=ref.name, namespace=ref.namespace),
            spec=AlertRelabelConfigSpec(configs=configs or []),
        )

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "AlertRelabelConfig":
        return cls.model_validate({"metadata": obj.get("metadata") or {}, "spec": obj.get("spec") or {}})

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(namespace=self.metadata.namespace, name=self.metadata.name)

    def to_k8s(self) -> Dict[str, Any]:
        spec = self.spec.model_dump(by_alias=True, exclude_none=True, exclude={"configs"})
        spec["configs"] = [c.to_k8s() for c in self.spec.configs]
        return {
            "apiVersion": ALERT_RELABEL_CONFIG_API_VERSION,
            "kind": "AlertRelabelConfig",
            "metadata": self.metadata.to_k8s(),
            "spec": spec,
        }


class WatchEventType(str, Enum):
    added = "ADDED"
    modified = "MODIFIED"
    deleted = "DELETED"
    error = "ERROR"


@dataclass(frozen=True)
class WatchEvent:
    """One watch notification; `object` is the parsed resource, or the raw Status for ERROR."""

    type: WatchEventType
    object: Any
