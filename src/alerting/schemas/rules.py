from __future__ import annotations

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from src.alerting.schemas.monitoring import Rule


class CreateAlertRuleRequest(BaseModel):
    """Request model for creating a user-defined rule, either from scratch or by cloning `sourceRuleId`."""

    model_config = ConfigDict(populate_by_name=True)

    source_rule_id: Optional[str] = Field(
        default=None,
        alias="sourceRuleId",
        description="Clone the effective content of this rule id (only `alert` is taken from this request).",
    )
    alert: str = Field("", description="Alert name.")
    expr: str = Field("", description="PromQL expression.")
    for_: Optional[str] = Field(default=None, alias="for", description="Pending duration, e.g. '5m'.")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    prometheus_rule_name: str = Field("", alias="prometheusRuleName", description="Target PrometheusRule name.")
    prometheus_rule_namespace: str = Field(
        "", alias="prometheusRuleNamespace", description="Target PrometheusRule namespace."
    )
    group_name: str = Field("", alias="groupName", description="Target group; defaults to 'user-defined-rules'.")

    def to_rule(self) -> Rule:
        return Rule(
            alert=self.alert,
            expr=self.expr,
            for_=self.for_ or None,
            labels=dict(self.labels),
            annotations=dict(self.annotations),
        )


class CreateAlertRuleResponse(BaseModel):
    id: str = Field(..., description="Content-addressed rule id (64 hex characters).")


class UpdateAlertRuleRequest(BaseModel):
    """Desired full label set of a platform rule; only labels can change."""

    labels: Dict[str, str] = Field(default_factory=dict)


class UpdateAlertRuleResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alert_relabel_config_name: str = Field(..., alias="alertRelabelConfigName")
    alert_relabel_config_namespace: str = Field(..., alias="alertRelabelConfigNamespace")


class RuleOut(BaseModel):
    """Response model for one alerting rule."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Content-addressed rule id.")
    alert: str = Field(..., description="Alert name.")
    expr: Union[str, int] = Field(..., description="PromQL expression.")
    for_: Optional[str] = Field(default=None, alias="for")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_rule(cls, rule_id: str, rule: Rule) -> "RuleOut":
        return cls(
            id=rule_id,
            alert=rule.alert,
            expr=rule.expr,
            for_=rule.for_,
            labels=dict(rule.labels),
            annotations=dict(rule.annotations),
        )


class RuleListResponse(BaseModel):
    """Envelope for listing rules."""

    items: List[RuleOut] = Field(..., description="Alerting rules matching the filters.")
    total: int = Field(..., ge=0, description="Total count of rules returned.")


class BulkDeleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rule_ids: List[str] = Field(default_factory=list, alias="ruleIds")


class BulkDeleteResult(BaseModel):
    id: str
    status_code: int = Field(..., description="HTTP status the single delete would have returned.")
    message: Optional[str] = None


class BulkDeleteResponse(BaseModel):
    rules: List[BulkDeleteResult] = Field(default_factory=list)
