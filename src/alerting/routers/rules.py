from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Path, Query, Request, Response, status

from src.alerting.errors import GENERIC_ERROR_MESSAGE, RuleManagementError, ValidationError, http_status_for
from src.alerting.schemas.common import ErrorResponse
from src.alerting.schemas.monitoring import ResourceRef, Rule
from src.alerting.schemas.rules import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    BulkDeleteResult,
    CreateAlertRuleRequest,
    CreateAlertRuleResponse,
    RuleListResponse,
    RuleOut,
    UpdateAlertRuleRequest,
    UpdateAlertRuleResponse,
)
from src.alerting.services.identity import compute_rule_id
from src.alerting.state import get_state

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerting", tags=["Rules"])

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    405: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _parse_label_selectors(raw: List[str]) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"invalid label filter {item!r}; expected key=value")
        labels[key.strip()] = value
    return labels


def _rule_id_param(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise ValidationError("missing ruleId")
    return value


@router.get(
    "/rules",
    response_model=RuleListResponse,
    responses=_ERRORS,
    summary="List alert rules",
    description="List alerting rules read directly from PrometheusRule resources, with optional filters.",
    operation_id="list_alert_rules",
)
async def list_rules(
    request: Request,
    namespace: str = Query("", description="PrometheusRule namespace."),
    name: str = Query("", description="PrometheusRule name; requires namespace."),
    group: str = Query("", description="Rule group name."),
    alert_name: str = Query("", alias="alertName", description="Exact alert name."),
    source: Optional[str] = Query(default=None, description="platform|user-defined"),
    label: List[str] = Query([], description="Repeatable key=value label filter."),
) -> RuleListResponse:
    """List alert rules."""
    state = get_state(request.app)
    rules = await state.mutator.list_rules(
        namespace=namespace,
        name=name,
        group_name=group,
        alert_name=alert_name,
        labels=_parse_label_selectors(label),
        source=source,
    )
    items = [RuleOut.from_rule(compute_rule_id(r), r) for r in rules]
    return RuleListResponse(items=items, total=len(items))


@router.post(
    "/rules",
    response_model=CreateAlertRuleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
    summary="Create alert rule",
    description="Create a user-defined alert rule, or clone an existing one when sourceRuleId is given.",
    operation_id="create_alert_rule",
)
async def create_rule(request: Request, payload: CreateAlertRuleRequest) -> CreateAlertRuleResponse:
    """Create an alert rule."""
    state = get_state(request.app)
    target = ResourceRef(namespace=payload.prometheus_rule_namespace, name=payload.prometheus_rule_name)
    if payload.source_rule_id and payload.source_rule_id.strip():
        rule_id = await state.mutator.create_from_existing_rule(
            payload.source_rule_id.strip(), payload.alert, target, payload.group_name
        )
    else:
        rule_id = await state.mutator.create_user_defined_alert_rule(payload.to_rule(), target, payload.group_name)
    return CreateAlertRuleResponse(id=rule_id)


@router.get(
    "/rules/{rule_id}",
    response_model=RuleOut,
    responses=_ERRORS,
    summary="Get alert rule",
    description="Fetch the effective rule; platform rules include their relabel overlay.",
    operation_id="get_alert_rule",
)
async def get_rule(
    request: Request,
    rule_id: str = Path(..., description="Content-addressed rule id."),
) -> RuleOut:
    """Get a rule by id."""
    rule_id = _rule_id_param(rule_id)
    rule = await get_state(request.app).mutator.get_rule_by_id(rule_id)
    return RuleOut.from_rule(rule_id, rule)


@router.patch(
    "/rules/{rule_id}",
    response_model=UpdateAlertRuleResponse,
    responses=_ERRORS,
    summary="Update platform alert rule labels",
    description="Set the labels of a platform rule through an AlertRelabelConfig overlay.",
    operation_id="update_platform_alert_rule",
)
async def update_rule(
    request: Request,
    payload: UpdateAlertRuleRequest,
    rule_id: str = Path(..., description="Content-addressed rule id."),
) -> UpdateAlertRuleResponse:
    """Patch the labels of a platform rule."""
    rule_id = _rule_id_param(rule_id)
    arc_ref = await get_state(request.app).mutator.update_platform_alert_rule(
        rule_id, Rule(labels=dict(payload.labels))
    )
    return UpdateAlertRuleResponse(
        alert_relabel_config_name=arc_ref.name,
        alert_relabel_config_namespace=arc_ref.namespace,
    )


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERRORS,
    summary="Delete alert rule",
    description="Delete a user-defined alert rule by id. Platform rules are refused with 405.",
    operation_id="delete_alert_rule",
)
async def delete_rule(
    request: Request,
    rule_id: str = Path(..., description="Content-addressed rule id."),
) -> Response:
    """Delete an alert rule."""
    await get_state(request.app).mutator.delete_user_defined_rule_by_id(_rule_id_param(rule_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/rules",
    response_model=BulkDeleteResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Bulk delete alert rules",
    description="Delete several user-defined rules; each id gets its own status code.",
    operation_id="bulk_delete_alert_rules",
)
async def bulk_delete_rules(request: Request, payload: BulkDeleteRequest) -> BulkDeleteResponse:
    """Delete user-defined rules one by one and report per-id outcomes."""
    if not payload.rule_ids:
        raise ValidationError("ruleIds is required")

    mutator = get_state(request.app).mutator
    results: List[BulkDeleteResult] = []
    for raw_id in payload.rule_ids:
        rule_id = raw_id.strip()
        if not rule_id:
            results.append(BulkDeleteResult(id=raw_id, status_code=400, message="missing ruleId"))
            continue
        try:
            await mutator.delete_user_defined_rule_by_id(rule_id)
        except RuleManagementError as e:
            status_code, _ = http_status_for(e)
            message = str(e)
            if status_code >= 500:
                logger.exception("Bulk delete failed for ruleId=%s", rule_id)
                message = GENERIC_ERROR_MESSAGE
            results.append(BulkDeleteResult(id=rule_id, status_code=status_code, message=message))
            continue
        results.append(BulkDeleteResult(id=rule_id, status_code=status.HTTP_204_NO_CONTENT))
    return BulkDeleteResponse(rules=results)
